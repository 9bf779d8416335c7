"""
Allocation Orchestrator Module

Single writer of case ownership. Every allocate, reallocate and deallocate
runs in one storage transaction that swaps the case's ownership pointer,
updates the allocation rows and agent load counters, appends the history
row and writes the audit and outbox entries.
"""

from datetime import datetime, timezone, date, timedelta
from typing import Any, Dict, List, Optional, Tuple
import uuid

from .storage import StorageInterface
from .models import (
    CaseAllocation, AllocationHistory, AllocationJob, AgentWorkload,
    AllocationStatus, AllocationType, AllocationAction, OwnerType,
    BatchType, BatchStatus, JobType, JobStatus, RuleStatus, percentage
)
from .directory import AgentDirectory, CaseDirectory
from .store import AllocationStore
from .rules import RuleManager, RuleEvaluator
from .filters import parse_filters, matches_all
from .audit import AuditTrail, AuditEventType, AuditEvent
from .events import DomainEvent, EventOutbox, OutboxRelay
from .jobs import JobRunner
from .exceptions import AllocationError, BusinessRuleError, ConflictError, ValidationError
from .logging_config import get_logger, log_action


# Sentinel: allocate() does not check the current owner
ANY_OWNER = object()


class AllocationOrchestrator:
    """Applies ownership changes and answers allocation queries"""

    def __init__(
        self,
        storage: StorageInterface,
        store: AllocationStore,
        agents: AgentDirectory,
        cases: CaseDirectory,
        rule_manager: RuleManager,
        evaluator: RuleEvaluator,
        audit_trail: AuditTrail,
        outbox: EventOutbox,
        relay: OutboxRelay,
        jobs: JobRunner
    ):
        self.storage = storage
        self.store = store
        self.agents = agents
        self.cases = cases
        self.rule_manager = rule_manager
        self.evaluator = evaluator
        self.audit_trail = audit_trail
        self.outbox = outbox
        self.relay = relay
        self.jobs = jobs
        self.logger = get_logger("allocation_engine.allocation")

    # Ownership changes

    def allocate(
        self,
        case_id: int,
        agent_id: int,
        allocated_by: str = "system",
        reason: Optional[str] = None,
        batch_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        secondary_agent_id: Optional[int] = None,
        allocation_type: AllocationType = AllocationType.PRIMARY,
        workload_percentage: Optional[float] = None,
        owner_type: OwnerType = OwnerType.USER,
        expected_agent_id: Any = ANY_OWNER
    ) -> CaseAllocation:
        """
        Make ``agent_id`` the owner of a case.

        Allocating to the agent that already owns the case is a no-op and
        returns the existing allocation. A case owned by someone else is
        moved in one step, recorded as a single REALLOCATE history entry.

        Args:
            case_id: Case to allocate
            agent_id: New primary owner
            allocated_by: Acting user
            reason: Free-text reason stored in history
            batch_id: Upload batch that requested the change
            rule_id: Rule that requested the change
            secondary_agent_id: Optional secondary agent (not counted as load)
            allocation_type: PRIMARY or SPLIT
            workload_percentage: Primary agent's share for SPLIT allocations
            owner_type: Kind of owner
            expected_agent_id: When given, the change only happens if the case
                is currently owned by this agent (None meaning unallocated)

        Returns:
            The active CaseAllocation for the case
        """
        case = self.cases.require_case(case_id)
        agent = self.agents.require_agent(agent_id, field_name="primary_agent_id")
        if not agent.active:
            raise BusinessRuleError(f"Agent {agent_id} is inactive", field_name="primary_agent_id")
        if secondary_agent_id is not None:
            if secondary_agent_id == agent_id:
                raise ValidationError("Secondary agent must differ from primary agent", field_name="secondary_agent_id")
            self.agents.require_agent(secondary_agent_id, field_name="secondary_agent_id")

        with self.storage.atomic():
            current = self.store.get_active_allocation(case_id)
            current_agent_id = current.primary_agent_id if current else None

            if expected_agent_id is not ANY_OWNER and current_agent_id != expected_agent_id:
                raise ConflictError(
                    f"Case {case_id} is owned by agent {current_agent_id}, expected {expected_agent_id}",
                    field_name="current_agent_id"
                )
            if current is not None and current_agent_id == agent_id:
                return current

            if self.store.agent_load(agent_id) >= agent.capacity:
                raise BusinessRuleError(
                    f"Agent {agent_id} has no available capacity (capacity {agent.capacity})",
                    field_name="primary_agent_id"
                )

            now = datetime.now(timezone.utc)
            allocation = CaseAllocation(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                case_id=case_id,
                primary_agent_id=agent_id,
                status=AllocationStatus.ALLOCATED,
                allocated_at=now,
                external_case_id=case.external_case_id,
                secondary_agent_id=secondary_agent_id,
                allocated_to_type=owner_type,
                allocation_type=allocation_type,
                workload_percentage=workload_percentage,
                geography_code=case.geography_code,
                allocated_by=allocated_by,
                allocation_rule_id=rule_id,
                batch_id=batch_id
            )

            if not self.store.swap_owner(case_id, current_agent_id, allocation):
                raise ConflictError(f"Case {case_id} was reallocated concurrently", field_name="case_id")

            before = None
            if current is not None:
                before = current.to_dict()
                self._close_allocation(current, now)

            self.store.save_allocation(allocation)
            self.store.adjust_agent_load(agent_id, 1)

            action = AllocationAction.REALLOCATE if current else AllocationAction.ALLOCATE
            self.store.append_history(AllocationHistory(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                case_id=case_id,
                action=action,
                allocated_at=now,
                external_case_id=case.external_case_id,
                allocated_to_user_id=agent_id,
                new_owner_type=owner_type,
                allocated_from_user_id=current_agent_id,
                previous_owner_type=current.allocated_to_type if current else None,
                reason=reason,
                allocated_by=allocated_by,
                batch_id=batch_id
            ))

            event_data = {
                'case_id': case_id,
                'agent_id': agent_id,
                'previous_agent_id': current_agent_id,
                'batch_id': batch_id,
                'rule_id': rule_id,
                'reason': reason,
            }
            self.audit_trail.log_event(
                AuditEventType.CASE_REALLOCATED if current else AuditEventType.CASE_ALLOCATED,
                "case", case_id, metadata=event_data, user_id=allocated_by,
                before=before, after=allocation.to_dict()
            )
            self.outbox.enqueue(
                DomainEvent.CASE_REALLOCATED if current else DomainEvent.CASE_ALLOCATED,
                "case", case_id, event_data
            )

        self.relay.relay_pending()
        log_action(
            self.logger, "info", f"Case {case_id} {action.value.lower()}d to agent {agent_id}",
            user_id=allocated_by, action=action.value.lower(), resource=f"case:{case_id}",
            batch_id=batch_id, extra={'previous_agent_id': current_agent_id}
        )
        return allocation

    def _close_allocation(self, allocation: CaseAllocation, now: datetime) -> None:
        allocation.status = AllocationStatus.DEALLOCATED
        allocation.deallocated_at = now
        allocation.updated_at = now
        self.store.save_allocation(allocation)
        self.store.adjust_agent_load(allocation.primary_agent_id, -1)

    def deallocate(
        self,
        case_id: int,
        deallocated_by: str = "system",
        reason: Optional[str] = None
    ) -> CaseAllocation:
        """Remove the current owner of a case; returns the closed allocation"""
        self.cases.require_case(case_id)

        with self.storage.atomic():
            current = self.store.get_active_allocation(case_id)
            if current is None:
                raise BusinessRuleError(f"Case {case_id} is not currently allocated", field_name="case_id")
            if not self.store.swap_owner(case_id, current.primary_agent_id, None):
                raise ConflictError(f"Case {case_id} was reallocated concurrently", field_name="case_id")

            now = datetime.now(timezone.utc)
            before = current.to_dict()
            self._close_allocation(current, now)

            self.store.append_history(AllocationHistory(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                case_id=case_id,
                action=AllocationAction.DEALLOCATE,
                allocated_at=now,
                external_case_id=current.external_case_id,
                allocated_from_user_id=current.primary_agent_id,
                previous_owner_type=current.allocated_to_type,
                reason=reason,
                allocated_by=deallocated_by
            ))

            event_data = {'case_id': case_id, 'previous_agent_id': current.primary_agent_id, 'reason': reason}
            self.audit_trail.log_event(
                AuditEventType.CASE_DEALLOCATED, "case", case_id, metadata=event_data,
                user_id=deallocated_by, before=before, after=current.to_dict()
            )
            self.outbox.enqueue(DomainEvent.CASE_DEALLOCATED, "case", case_id, event_data)

        self.relay.relay_pending()
        log_action(self.logger, "info", f"Case {case_id} deallocated from agent {current.primary_agent_id}",
                   user_id=deallocated_by, action="deallocate", resource=f"case:{case_id}")
        return current

    def bulk_deallocate(
        self,
        case_ids: List[int],
        deallocated_by: str = "system",
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Deallocate several cases, reporting the outcome for each"""
        if not case_ids:
            raise ValidationError("At least one case id is required", field_name="case_ids")

        deallocated = []
        failures = []
        for case_id in dict.fromkeys(case_ids):
            try:
                self.deallocate(case_id, deallocated_by=deallocated_by, reason=reason)
                deallocated.append(case_id)
            except AllocationError as e:
                failures.append({'case_id': case_id, 'reason': str(e), 'error_type': e.error_type})

        return {
            'total': len(deallocated) + len(failures),
            'successful': len(deallocated),
            'failed': len(failures),
            'deallocated_case_ids': deallocated,
            'failures': failures,
        }

    # Reallocation jobs

    def _require_target_agent(self, agent_id: int) -> None:
        agent = self.agents.require_agent(agent_id, field_name="to_agent_id")
        if not agent.active:
            raise BusinessRuleError(f"Agent {agent_id} is inactive", field_name="to_agent_id")

    def reallocate_by_agent(
        self,
        from_agent_id: int,
        to_agent_id: int,
        reason: Optional[str] = None,
        requested_by: str = "system"
    ) -> AllocationJob:
        """Move every case owned by one agent to another, in the background"""
        if from_agent_id == to_agent_id:
            raise ValidationError("Source and target agent must differ", field_name="to_agent_id")
        self.agents.require_agent(from_agent_id, field_name="from_agent_id")
        self._require_target_agent(to_agent_id)

        items = [(a.case_id, a.primary_agent_id) for a in self.store.active_allocations(agent_id=from_agent_id)]
        parameters = {'from_agent_id': from_agent_id, 'to_agent_id': to_agent_id, 'reason': reason}
        return self._start_job(JobType.REALLOCATE_BY_AGENT, items, to_agent_id, reason, requested_by, parameters)

    def reallocate_by_filter(
        self,
        filters: List[Any],
        to_agent_id: int,
        reason: Optional[str] = None,
        requested_by: str = "system",
        from_agent_id: Optional[int] = None
    ) -> AllocationJob:
        """Move allocated cases matching typed filters to one agent, in the background"""
        criteria = parse_filters(filters)
        if not criteria:
            raise ValidationError("At least one filter is required", field_name="filters")
        self._require_target_agent(to_agent_id)

        items: List[Tuple[int, int]] = []
        for allocation in self.store.active_allocations(agent_id=from_agent_id):
            if allocation.primary_agent_id == to_agent_id:
                continue
            case = self.cases.get_case(allocation.case_id)
            if case is None:
                continue
            record = case.to_dict()
            record['primary_agent_id'] = allocation.primary_agent_id
            if matches_all(criteria, record):
                items.append((allocation.case_id, allocation.primary_agent_id))

        parameters = {
            'filters': [f if isinstance(f, dict) else repr(f) for f in filters],
            'to_agent_id': to_agent_id,
            'from_agent_id': from_agent_id,
            'reason': reason,
        }
        return self._start_job(JobType.REALLOCATE_BY_FILTER, items, to_agent_id, reason, requested_by, parameters)

    def _start_job(self, job_type: JobType, items: List[Tuple[int, int]], to_agent_id: int,
                   reason: Optional[str], requested_by: str, parameters: Dict[str, Any]) -> AllocationJob:
        now = datetime.now(timezone.utc)
        job = AllocationJob(
            id=f"REALLOC_JOB_{uuid.uuid4().hex[:12].upper()}",
            created_at=now,
            updated_at=now,
            job_type=job_type,
            estimated_cases=len(items),
            parameters=parameters,
            requested_by=requested_by
        )
        with self.storage.atomic():
            self.store.save_job(job)
            self.audit_trail.log_event(
                AuditEventType.JOB_SUBMITTED, "job", job.id,
                metadata={'job_type': job_type.value, 'estimated_cases': len(items), **parameters},
                user_id=requested_by
            )

        log_action(self.logger, "info", f"Reallocation job {job.id} queued for {len(items)} cases",
                   user_id=requested_by, action=job_type.value.lower(), resource=f"job:{job.id}")
        self.jobs.submit(job.id, self._run_job, job.id, items, to_agent_id, reason, requested_by)
        return job

    def _run_job(self, job_id: str, items: List[Tuple[int, int]], to_agent_id: int,
                 reason: Optional[str], requested_by: str) -> AllocationJob:
        job = self.store.require_job(job_id)
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now(timezone.utc)
        self.store.save_job(job)

        try:
            for case_id, expected_owner in items:
                try:
                    self.allocate(
                        case_id, to_agent_id, allocated_by=requested_by, reason=reason,
                        expected_agent_id=expected_owner
                    )
                    job.successful += 1
                except AllocationError as e:
                    job.failed += 1
                    job.failures.append({'case_id': case_id, 'reason': str(e), 'error_type': e.error_type})
                job.processed_cases += 1
                self.store.save_job(job)
            job.status = JobStatus.COMPLETED_WITH_ERRORS if job.failed else JobStatus.COMPLETED
        except Exception as e:
            self.logger.exception(f"Reallocation job {job_id} failed")
            job.status = JobStatus.FAILED
            job.error_message = str(e)

        job.completed_at = datetime.now(timezone.utc)
        summary = {
            'status': job.status.value,
            'estimated_cases': job.estimated_cases,
            'successful': job.successful,
            'failed': job.failed,
        }
        with self.storage.atomic():
            self.store.save_job(job)
            self.audit_trail.log_event(AuditEventType.JOB_COMPLETED, "job", job.id,
                                       metadata=summary, user_id=requested_by)
            self.outbox.enqueue(DomainEvent.JOB_COMPLETED, "job", job.id, summary)
        self.relay.relay_pending()

        log_action(self.logger, "info", f"Reallocation job {job.id} finished: {job.status.value}",
                   user_id=requested_by, action="job_completed", resource=f"job:{job.id}", extra=summary)
        return job

    def get_job(self, job_id: str) -> AllocationJob:
        return self.store.require_job(job_id)

    # Rules

    def apply_rule(
        self,
        rule_id: str,
        applied_by: str = "system",
        dry_run: bool = False,
        agent_ids: Optional[List[int]] = None,
        percentages: Optional[List[Any]] = None,
        case_ids: Optional[List[int]] = None,
        max_cases: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Allocate the cases a rule matches according to its distribution plan.

        A dry run only simulates. Otherwise the rule must be ACTIVE, and each
        planned assignment goes through allocate() so capacity and ownership
        are rechecked at write time.
        """
        rule = self.rule_manager.require_rule(rule_id)
        if not dry_run and rule.status != RuleStatus.ACTIVE:
            raise BusinessRuleError(
                f"Allocation rule {rule_id} is {rule.status.value} and cannot be applied",
                field_name="rule_id"
            )

        evaluation = self.evaluator.evaluate(
            rule, case_ids=case_ids, agent_ids=agent_ids, percentages=percentages, max_cases=max_cases
        )
        result = evaluation.to_dict()
        result['dry_run'] = dry_run
        if dry_run:
            return result

        allocated = []
        failures = []
        for assignment in evaluation.plan.assignments:
            try:
                self.allocate(
                    assignment.case_id, assignment.agent_id, allocated_by=applied_by,
                    reason=f"Allocation rule {rule.name}", rule_id=rule.id, expected_agent_id=None
                )
                allocated.append({'case_id': assignment.case_id, 'agent_id': assignment.agent_id})
            except AllocationError as e:
                failures.append({'case_id': assignment.case_id, 'agent_id': assignment.agent_id, 'reason': str(e)})

        summary = {
            'matched_cases': len(evaluation.matched_case_ids),
            'allocated': len(allocated),
            'failed': len(failures),
            'unassigned': len(evaluation.plan.unassigned_case_ids),
        }
        with self.storage.atomic():
            self.audit_trail.log_event(AuditEventType.RULE_APPLIED, "rule", rule.id,
                                       metadata=summary, user_id=applied_by)
            self.outbox.enqueue(DomainEvent.RULE_APPLIED, "rule", rule.id, summary)
        self.relay.relay_pending()

        result.update({
            'allocated': len(allocated),
            'failed': len(failures),
            'allocations': allocated,
            'failures': failures,
        })
        return result

    # Queries

    def get_case_allocation(self, case_id: int) -> Optional[CaseAllocation]:
        return self.store.get_active_allocation(case_id)

    def get_case_history(self, case_id: int) -> List[AllocationHistory]:
        history = self.store.history_for_case(case_id)
        return sorted(history, key=lambda h: (h.allocated_at, h.created_at))

    def get_agent_workload(
        self,
        agent_ids: Optional[List[int]] = None,
        geographies: Optional[List[str]] = None
    ) -> List[AgentWorkload]:
        """Workload per agent, derived from active allocation rows"""
        counts = self.store.count_active_by_agent()
        workloads = []
        for agent in self.agents.list_agents(geographies=geographies, agent_ids=agent_ids):
            active = counts.get(agent.agent_id, 0)
            workloads.append(AgentWorkload(
                agent_id=agent.agent_id,
                agent_name=agent.name,
                geography=agent.geography_code,
                capacity=agent.capacity,
                active_allocations=active,
                available_capacity=max(0, agent.capacity - active),
                utilization_percentage=percentage(active, agent.capacity),
                active=agent.active
            ))
        return workloads

    def get_allocated_cases(
        self,
        agent_id: Optional[int] = None,
        geography: Optional[str] = None,
        page: int = 0,
        size: int = 50
    ) -> Dict[str, Any]:
        """Page through active allocations"""
        if page < 0 or size <= 0:
            raise ValidationError("page must be >= 0 and size > 0", field_name="page")
        allocations = self.store.active_allocations(agent_id=agent_id, geography=geography)
        start = page * size
        return {
            'items': allocations[start:start + size],
            'total': len(allocations),
            'page': page,
            'size': size,
        }

    def get_allocation_summary(self) -> Dict[str, int]:
        """Totals over all allocation upload batches"""
        batches = self.store.list_batches(batch_type=BatchType.ALLOCATION)
        return {
            'total_allocations': sum(b.total_cases for b in batches),
            'successful_allocations': sum(b.successful_allocations for b in batches),
            'failed_allocations': sum(b.failed_allocations for b in batches),
            'pending_allocations': sum(1 for b in batches if b.status == BatchStatus.UPLOADED or b.status.is_processing),
            'active_allocations': len(self.store.active_allocations()),
        }

    def get_allocation_summary_by_date(self, day: date) -> Dict[str, Any]:
        """Totals over allocation batches uploaded on one day (UTC)"""
        start = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
        end = start + timedelta(days=1) - timedelta(microseconds=1)
        batches = self.store.list_batches(batch_type=BatchType.ALLOCATION, start=start, end=end)
        return {
            'date': day.isoformat(),
            'total_allocations': sum(b.total_cases for b in batches),
            'successful_allocations': sum(b.successful_allocations for b in batches),
            'failed_allocations': sum(b.failed_allocations for b in batches),
        }

    def get_audit_logs(
        self,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        entity_type: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        return self.audit_trail.get_all_events(
            start_time=start_time, end_time=end_time, entity_type=entity_type,
            user_id=user_id, limit=limit
        )

    def get_case_audit(self, case_id: int) -> List[AuditEvent]:
        return self.audit_trail.get_events_for_entity("case", str(case_id))

    def verify_consistency(self) -> Dict[str, Any]:
        """
        Check ownership invariants: at most one active row per case, the
        ownership pointer agreeing with the rows, load counters agreeing with
        the rows, and the last history entry naming the current owner.
        """
        active_by_case: Dict[int, List[CaseAllocation]] = {}
        for allocation in self.store.active_allocations():
            active_by_case.setdefault(allocation.case_id, []).append(allocation)

        duplicate_active = sorted(case_id for case_id, rows in active_by_case.items() if len(rows) > 1)

        pointer_mismatches = []
        history_mismatches = []
        case_ids = set(active_by_case) | {h.case_id for h in self.store.all_history()}
        for case_id in sorted(case_ids):
            rows = active_by_case.get(case_id, [])
            actual_owner = rows[0].primary_agent_id if len(rows) == 1 else None
            pointer_owner = self.store.current_owner(case_id)
            if pointer_owner != actual_owner:
                pointer_mismatches.append({'case_id': case_id, 'pointer': pointer_owner, 'rows': actual_owner})

            history = self.get_case_history(case_id)
            history_owner = history[-1].allocated_to_user_id if history else None
            if history_owner != actual_owner:
                history_mismatches.append({'case_id': case_id, 'history': history_owner, 'rows': actual_owner})

        derived = self.store.count_active_by_agent()
        counters = self.store.all_agent_loads()
        counter_mismatches = [
            {'agent_id': agent_id, 'counter': counters.get(agent_id, 0), 'actual': derived.get(agent_id, 0)}
            for agent_id in sorted(set(derived) | set(counters))
            if counters.get(agent_id, 0) != derived.get(agent_id, 0)
        ]

        return {
            'consistent': not (duplicate_active or pointer_mismatches or history_mismatches or counter_mismatches),
            'duplicate_active_cases': duplicate_active,
            'pointer_mismatches': pointer_mismatches,
            'history_mismatches': history_mismatches,
            'counter_mismatches': counter_mismatches,
        }

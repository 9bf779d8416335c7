"""
Tests for the allocation orchestrator: ownership changes, reallocation jobs
and rule application
"""

import threading

import pytest

from allocation_engine.models import (
    AllocationAction, AllocationStatus, AllocationType, JobStatus, RuleStatus, RuleType
)
from allocation_engine.audit import AuditEventType
from allocation_engine.events import DomainEvent
from allocation_engine.exceptions import (
    BusinessRuleError, ConflictError, NotFoundError, ValidationError
)


def active_rows(system, case_id):
    return [a for a in system.store.allocations_for_case(case_id) if a.status == AllocationStatus.ALLOCATED]


class TestAllocate:
    """Single case allocation"""

    def test_first_allocation(self, system):
        """Allocating an unowned case creates one row, one history entry and one load"""
        allocation = system.orchestrator.allocate(100, 1, allocated_by="ops", reason="new case")

        assert allocation.status == AllocationStatus.ALLOCATED
        assert allocation.external_case_id == "EXT-100"
        assert allocation.geography_code == "MH-PUNE"
        assert system.store.current_owner(100) == 1
        assert system.store.agent_load(1) == 1

        history = system.orchestrator.get_case_history(100)
        assert len(history) == 1
        assert history[0].action == AllocationAction.ALLOCATE
        assert history[0].allocated_to_user_id == 1
        assert history[0].allocated_from_user_id is None

    def test_same_agent_is_idempotent(self, system):
        """Allocating to the current owner changes nothing"""
        first = system.orchestrator.allocate(100, 1)
        second = system.orchestrator.allocate(100, 1)

        assert second.id == first.id
        assert system.store.agent_load(1) == 1
        assert len(system.store.allocations_for_case(100)) == 1
        assert len(system.orchestrator.get_case_history(100)) == 1

    def test_reallocation_is_one_history_entry(self, system):
        """Moving an owned case closes the old row and records a single REALLOCATE"""
        system.orchestrator.allocate(100, 1)
        system.orchestrator.allocate(100, 2, reason="workload")

        rows = system.store.allocations_for_case(100)
        assert [r.status for r in rows] == [AllocationStatus.DEALLOCATED, AllocationStatus.ALLOCATED]
        assert rows[0].deallocated_at is not None
        assert len(active_rows(system, 100)) == 1

        history = system.orchestrator.get_case_history(100)
        assert [h.action for h in history] == [AllocationAction.ALLOCATE, AllocationAction.REALLOCATE]
        assert history[-1].allocated_from_user_id == 1
        assert history[-1].allocated_to_user_id == 2
        assert history[-1].reason == "workload"

        assert system.store.agent_load(1) == 0
        assert system.store.agent_load(2) == 1

    def test_split_allocation(self, system):
        """A secondary agent is recorded but does not count as load"""
        allocation = system.orchestrator.allocate(
            100, 1, secondary_agent_id=2, allocation_type=AllocationType.SPLIT, workload_percentage=60.0
        )
        assert allocation.secondary_agent_id == 2
        assert allocation.allocation_type == AllocationType.SPLIT
        assert system.store.agent_load(2) == 0

    def test_secondary_must_differ(self, system):
        with pytest.raises(ValidationError):
            system.orchestrator.allocate(100, 1, secondary_agent_id=1)

    def test_unknown_case_and_agent(self, system):
        with pytest.raises(NotFoundError):
            system.orchestrator.allocate(999, 1)
        with pytest.raises(NotFoundError) as exc_info:
            system.orchestrator.allocate(100, 99999)
        assert exc_info.value.field_name == "primary_agent_id"

    def test_inactive_agent(self, system):
        system.agents.set_active(3, False)
        with pytest.raises(BusinessRuleError):
            system.orchestrator.allocate(100, 3)
        assert system.store.current_owner(100) is None

    def test_capacity_enforced(self, system):
        """An agent at capacity cannot take another case"""
        system.agents.set_capacity(1, 2)
        system.orchestrator.allocate(100, 1)
        system.orchestrator.allocate(101, 1)
        with pytest.raises(BusinessRuleError):
            system.orchestrator.allocate(102, 1)
        assert system.store.agent_load(1) == 2
        assert system.store.current_owner(102) is None

    def test_expected_owner_mismatch(self, system):
        system.orchestrator.allocate(100, 1)
        with pytest.raises(ConflictError):
            system.orchestrator.allocate(100, 3, expected_agent_id=2)
        with pytest.raises(ConflictError):
            system.orchestrator.allocate(100, 3, expected_agent_id=None)
        assert system.store.current_owner(100) == 1

    def test_audit_and_events(self, system):
        """Each change is audited and published after commit"""
        received = []
        system.dispatcher.subscribe(DomainEvent.CASE_REALLOCATED, received.append)

        system.orchestrator.allocate(100, 1, allocated_by="ops")
        system.orchestrator.allocate(100, 2, allocated_by="ops")

        audit = system.orchestrator.get_case_audit(100)
        assert [e.event_type for e in audit] == [AuditEventType.CASE_ALLOCATED, AuditEventType.CASE_REALLOCATED]
        assert audit[-1].metadata["previous_agent_id"] == 1
        assert "primary_agent_id" in audit[-1].metadata["changed_fields"]

        assert len(received) == 1
        assert received[0].data["agent_id"] == 2
        assert system.outbox.count_pending() == 0

    def test_failed_allocation_leaves_no_trace(self, system):
        """A rejected change writes no history, audit or outbox entry"""
        system.agents.set_capacity(2, 0)
        with pytest.raises(BusinessRuleError):
            system.orchestrator.allocate(100, 2)

        assert system.orchestrator.get_case_history(100) == []
        assert system.orchestrator.get_case_audit(100) == []
        assert system.outbox.count_pending() == 0


class TestDeallocate:
    """Removing owners"""

    def test_deallocate(self, system):
        system.orchestrator.allocate(100, 1)
        closed = system.orchestrator.deallocate(100, deallocated_by="ops", reason="settled")

        assert closed.status == AllocationStatus.DEALLOCATED
        assert system.orchestrator.get_case_allocation(100) is None
        assert system.store.current_owner(100) is None
        assert system.store.agent_load(1) == 0

        history = system.orchestrator.get_case_history(100)
        assert history[-1].action == AllocationAction.DEALLOCATE
        assert history[-1].allocated_to_user_id is None
        assert history[-1].allocated_from_user_id == 1

    def test_deallocate_unallocated_case(self, system):
        with pytest.raises(BusinessRuleError):
            system.orchestrator.deallocate(100)

    def test_reallocate_after_deallocate(self, system):
        """A freed case is allocated again as a fresh ALLOCATE"""
        system.orchestrator.allocate(100, 1)
        system.orchestrator.deallocate(100)
        system.orchestrator.allocate(100, 2)

        history = system.orchestrator.get_case_history(100)
        assert [h.action for h in history] == [
            AllocationAction.ALLOCATE, AllocationAction.DEALLOCATE, AllocationAction.ALLOCATE
        ]
        assert len(active_rows(system, 100)) == 1

    def test_bulk_deallocate(self, system):
        """Per-case outcomes are reported and duplicates counted once"""
        system.orchestrator.allocate(100, 1)
        system.orchestrator.allocate(101, 2)

        result = system.orchestrator.bulk_deallocate([100, 101, 102, 100, 999], reason="cleanup")
        assert result["total"] == 4
        assert result["successful"] == 2
        assert result["deallocated_case_ids"] == [100, 101]
        assert {f["case_id"] for f in result["failures"]} == {102, 999}

    def test_bulk_deallocate_needs_cases(self, system):
        with pytest.raises(ValidationError):
            system.orchestrator.bulk_deallocate([])


class TestConcurrency:
    """Racing writers on the same case"""

    def test_one_winner_for_unowned_case(self, system):
        """Of several agents claiming an unowned case, exactly one succeeds"""
        outcomes = []
        lock = threading.Lock()

        def claim(agent_id):
            try:
                system.orchestrator.allocate(100, agent_id, expected_agent_id=None)
                result = "won"
            except ConflictError:
                result = "lost"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=claim, args=(agent_id,)) for agent_id in (1, 2, 3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("won") == 1
        assert len(active_rows(system, 100)) == 1
        assert len(system.orchestrator.get_case_history(100)) == 1
        assert sum(system.store.all_agent_loads().values()) == 1

    def test_parallel_reallocations_stay_consistent(self, system):
        """Unconditional reallocations from many threads keep every invariant"""
        for case_id in range(100, 105):
            system.orchestrator.allocate(case_id, 1)

        def shuffle(agent_id):
            for case_id in range(100, 105):
                system.orchestrator.allocate(case_id, agent_id)

        threads = [threading.Thread(target=shuffle, args=(agent_id,)) for agent_id in (2, 3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        report = system.orchestrator.verify_consistency()
        assert report["consistent"], report
        for case_id in range(100, 105):
            assert len(active_rows(system, case_id)) == 1


class TestConsistencyCheck:
    """verify_consistency detects broken invariants"""

    def test_clean_state(self, system):
        system.orchestrator.allocate(100, 1)
        system.orchestrator.allocate(100, 2)
        system.orchestrator.allocate(101, 3)
        system.orchestrator.deallocate(101)
        assert system.orchestrator.verify_consistency()["consistent"]

    def test_detects_counter_drift(self, system):
        system.orchestrator.allocate(100, 1)
        system.store.adjust_agent_load(1, 1)

        report = system.orchestrator.verify_consistency()
        assert not report["consistent"]
        assert report["counter_mismatches"] == [{"agent_id": 1, "counter": 2, "actual": 1}]


class TestReallocationJobs:
    """Background reallocation by agent and by filter"""

    def test_reallocate_by_agent(self, system):
        for case_id in (100, 101, 102):
            system.orchestrator.allocate(case_id, 1)

        job = system.orchestrator.reallocate_by_agent(1, 2, reason="agent left", requested_by="lead")
        assert job.job_id.startswith("REALLOC_JOB_")
        assert job.estimated_cases == 3

        system.jobs.wait(job.job_id)
        finished = system.orchestrator.get_job(job.job_id)
        assert finished.status == JobStatus.COMPLETED
        assert finished.successful == 3
        assert finished.processed_cases == 3
        assert [a.case_id for a in system.store.active_allocations(agent_id=2)] == [100, 101, 102]
        assert system.store.agent_load(1) == 0

        history = system.orchestrator.get_case_history(101)
        assert history[-1].action == AllocationAction.REALLOCATE
        assert history[-1].reason == "agent left"

    def test_reallocate_by_agent_capacity_shortfall(self, system):
        """Cases beyond the target's capacity are reported as failures"""
        for case_id in (100, 101, 102):
            system.orchestrator.allocate(case_id, 1)
        system.agents.set_capacity(2, 2)

        job = system.orchestrator.reallocate_by_agent(1, 2)
        system.jobs.wait(job.job_id)
        finished = system.orchestrator.get_job(job.job_id)

        assert finished.status == JobStatus.COMPLETED_WITH_ERRORS
        assert finished.successful == 2
        assert finished.failed == 1
        assert finished.failures[0]["case_id"] == 102
        assert finished.failures[0]["error_type"] == "BUSINESS_RULE"
        assert system.store.current_owner(102) == 1

    def test_reallocate_by_agent_validation(self, system):
        with pytest.raises(ValidationError):
            system.orchestrator.reallocate_by_agent(1, 1)
        with pytest.raises(NotFoundError):
            system.orchestrator.reallocate_by_agent(1, 99999)
        system.agents.set_active(2, False)
        with pytest.raises(BusinessRuleError):
            system.orchestrator.reallocate_by_agent(1, 2)

    def test_reallocate_by_filter(self, system):
        for case_id in range(100, 106):
            system.orchestrator.allocate(case_id, 1 if case_id < 103 else 2)

        job = system.orchestrator.reallocate_by_filter(
            [{"type": "TEXT", "field": "bucket", "operator": "=", "value": "B1"}],
            to_agent_id=3, reason="bucket focus"
        )
        assert job.estimated_cases == 3
        system.jobs.wait(job.job_id)

        assert system.orchestrator.get_job(job.job_id).status == JobStatus.COMPLETED
        assert [a.case_id for a in system.store.active_allocations(agent_id=3)] == [100, 102, 104]

    def test_reallocate_by_filter_from_agent(self, system):
        for case_id in range(100, 106):
            system.orchestrator.allocate(case_id, 1 if case_id < 103 else 2)

        job = system.orchestrator.reallocate_by_filter(
            [{"type": "NUMERIC", "field": "dpd", "operator": ">=", "value": 0}],
            to_agent_id=3, from_agent_id=2
        )
        system.jobs.wait(job.job_id)
        assert [a.case_id for a in system.store.active_allocations(agent_id=3)] == [103, 104, 105]

    def test_reallocate_by_filter_needs_filters(self, system):
        with pytest.raises(ValidationError):
            system.orchestrator.reallocate_by_filter([], to_agent_id=3)
        with pytest.raises(ValidationError):
            system.orchestrator.reallocate_by_filter(
                [{"type": "DATE", "field": "due_date", "operator": "BETWEEN", "from": "2024-02-01"}],
                to_agent_id=3
            )

    def test_unknown_job(self, system):
        with pytest.raises(NotFoundError):
            system.orchestrator.get_job("REALLOC_JOB_MISSING")


class TestApplyRule:
    """Allocating the cases a rule matches"""

    def test_apply_allocates_plan(self, system):
        rule = system.rule_manager.create_rule(
            name="Pune", rule_type=RuleType.GEOGRAPHY, geographies=["MH-PUNE"]
        )
        result = system.orchestrator.apply_rule(rule.id, applied_by="ops")

        assert result["dry_run"] is False
        assert result["allocated"] == 10
        assert result["failed"] == 0
        loads = system.store.all_agent_loads()
        assert sum(loads.values()) == 10
        assert max(loads.values()) - min(loads.values()) <= 1
        assert system.store.get_active_allocation(100).allocation_rule_id == rule.id
        assert system.orchestrator.verify_consistency()["consistent"]

    def test_dry_run_changes_nothing(self, system):
        rule = system.rule_manager.create_rule(name="All", rule_type=RuleType.CAPACITY_BASED)
        result = system.orchestrator.apply_rule(rule.id, dry_run=True)
        assert result["dry_run"] is True
        assert result["matched_cases"] == 10
        assert system.store.active_allocations() == []

    def test_draft_rule_cannot_be_applied(self, system):
        rule = system.rule_manager.create_rule(
            name="Draft", rule_type=RuleType.CAPACITY_BASED, status=RuleStatus.DRAFT
        )
        with pytest.raises(BusinessRuleError):
            system.orchestrator.apply_rule(rule.id)
        assert system.orchestrator.apply_rule(rule.id, dry_run=True)["matched_cases"] == 10

    def test_apply_with_percentages(self, system):
        rule = system.rule_manager.create_rule(
            name="Split", rule_type=RuleType.CAPACITY_BASED, agent_ids=[1, 2, 3], percentages=[30, 30, 40]
        )
        result = system.orchestrator.apply_rule(rule.id)
        assert result["suggested_distribution"] == {"1": 3, "2": 3, "3": 4}
        assert system.store.all_agent_loads() == {1: 3, 2: 3, 3: 4}

    def test_apply_audited(self, system):
        rule = system.rule_manager.create_rule(name="All", rule_type=RuleType.CAPACITY_BASED)
        system.orchestrator.apply_rule(rule.id, applied_by="ops", max_cases=2)
        events = system.audit_trail.get_events_for_entity("rule", rule.id)
        assert events[-1].event_type == AuditEventType.RULE_APPLIED
        assert events[-1].metadata["allocated"] == 2


class TestQueries:
    """Workload and listing queries"""

    def test_agent_workload(self, system):
        system.orchestrator.allocate(100, 1)
        system.orchestrator.allocate(101, 1)
        system.orchestrator.allocate(102, 2)

        workloads = {w.agent_id: w for w in system.orchestrator.get_agent_workload()}
        assert workloads[1].active_allocations == 2
        assert workloads[1].available_capacity == 8
        assert workloads[1].utilization_percentage == 20.0
        assert workloads[3].active_allocations == 0

        pune_only = system.orchestrator.get_agent_workload(geographies=["MH-PUNE"])
        assert [w.agent_id for w in pune_only] == [1, 2, 3]

    def test_allocated_cases_pagination(self, system):
        for case_id in range(100, 105):
            system.orchestrator.allocate(case_id, 1)

        page = system.orchestrator.get_allocated_cases(agent_id=1, page=1, size=2)
        assert page["total"] == 5
        assert [a.case_id for a in page["items"]] == [102, 103]

        with pytest.raises(ValidationError):
            system.orchestrator.get_allocated_cases(size=0)

    def test_audit_log_filters(self, system):
        system.orchestrator.allocate(100, 1, allocated_by="alice")
        system.orchestrator.allocate(101, 1, allocated_by="bob")

        events = system.orchestrator.get_audit_logs(entity_type="case", user_id="bob")
        assert [e.entity_id for e in events] == ["101"]

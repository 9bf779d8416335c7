"""
Allocation Rules Module

Rule management (create, update, delete) and the rule evaluator that turns a
rule into a set of matching unallocated cases and eligible agents.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import uuid

from .storage import StorageInterface
from .models import AllocationRule, RuleType, RuleStatus
from .directory import Agent, AgentDirectory, CaseDirectory
from .store import AllocationStore
from .distribution import (
    AgentSlot, DistributionPlan, DistributionPlanner, DistributionStrategy, validate_percentages
)
from .filters import parse_filters, matches_all
from .audit import AuditTrail, AuditEventType
from .exceptions import BusinessRuleError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action


@dataclass
class AgentCapacity:
    """An eligible agent and its remaining room under a rule"""
    agent_id: int
    agent_name: str
    geography: Optional[str]
    capacity: int
    active_allocations: int
    available_capacity: int

    def to_slot(self) -> AgentSlot:
        return AgentSlot(self.agent_id, self.available_capacity, self.agent_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'agent_id': self.agent_id,
            'agent_name': self.agent_name,
            'geography': self.geography,
            'capacity': self.capacity,
            'active_allocations': self.active_allocations,
            'available_capacity': self.available_capacity,
        }


@dataclass
class RuleEvaluation:
    """Cases and agents selected by a rule, plus the plan for placing them"""
    rule: AllocationRule
    matched_case_ids: List[int]
    eligible_agents: List[AgentCapacity]
    strategy: DistributionStrategy
    percentages: Optional[List[Any]] = None
    plan: Optional[DistributionPlan] = None

    def to_dict(self) -> Dict[str, Any]:
        plan = self.plan.to_dict() if self.plan else None
        return {
            'rule_id': self.rule.id,
            'rule_name': self.rule.name,
            'rule_type': self.rule.rule_type.value,
            'status': self.rule.status.value,
            'strategy': self.strategy.value,
            'matched_cases': len(self.matched_case_ids),
            'matched_case_ids': list(self.matched_case_ids),
            'eligible_agents': [a.to_dict() for a in self.eligible_agents],
            'suggested_distribution': plan['counts_by_agent'] if plan else {},
            'assignments': plan['assignments'] if plan else [],
            'unassigned_case_ids': plan['unassigned_case_ids'] if plan else [],
        }


_RULE_FIELDS = (
    'name', 'description', 'rule_type', 'status', 'geographies', 'states', 'cities',
    'buckets', 'criteria', 'agent_ids', 'percentages', 'max_cases_per_agent',
    'priority',
)


def _normalize_list(values: Optional[List[Any]]) -> List[Any]:
    return [v.strip() if isinstance(v, str) else v for v in (values or []) if v not in (None, "")]


def validate_rule(rule: AllocationRule) -> None:
    """Raise ValidationError when a rule cannot be evaluated"""
    if not rule.name or not rule.name.strip():
        raise ValidationError("Rule name is required", field_name="name")
    if rule.rule_type == RuleType.GEOGRAPHY and not (rule.geographies or rule.states or rule.cities):
        raise ValidationError(
            "GEOGRAPHY rule needs at least one geography, state or city",
            field_name="geographies"
        )
    if rule.max_cases_per_agent is not None and rule.max_cases_per_agent <= 0:
        raise ValidationError("max_cases_per_agent must be positive", field_name="max_cases_per_agent")
    if rule.percentages:
        if not rule.agent_ids:
            raise ValidationError("percentages need matching agent_ids", field_name="agent_ids")
        validate_percentages(rule.agent_ids, rule.percentages)
    parse_filters(rule.criteria)


class RuleManager:
    """Stores and maintains allocation rules"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "allocation_rules"
        self.logger = get_logger("allocation_engine.rules")

    def create_rule(
        self,
        name: str,
        rule_type: RuleType,
        created_by: Optional[str] = None,
        status: RuleStatus = RuleStatus.ACTIVE,
        description: Optional[str] = None,
        geographies: Optional[List[str]] = None,
        states: Optional[List[str]] = None,
        cities: Optional[List[str]] = None,
        buckets: Optional[List[str]] = None,
        criteria: Optional[List[Dict[str, Any]]] = None,
        agent_ids: Optional[List[int]] = None,
        percentages: Optional[List[float]] = None,
        max_cases_per_agent: Optional[int] = None,
        priority: int = 0
    ) -> AllocationRule:
        """Create and validate a new allocation rule"""
        now = datetime.now(timezone.utc)
        rule = AllocationRule(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            rule_type=rule_type,
            status=status,
            description=description,
            geographies=_normalize_list(geographies),
            states=_normalize_list(states),
            cities=_normalize_list(cities),
            buckets=_normalize_list(buckets),
            criteria=list(criteria or []),
            agent_ids=list(agent_ids or []),
            percentages=list(percentages or []),
            max_cases_per_agent=max_cases_per_agent,
            priority=priority,
            created_by=created_by
        )
        validate_rule(rule)

        with self.storage.atomic():
            self.storage.save(self.table_name, rule.id, rule.to_dict())
            self.audit_trail.log_event(
                AuditEventType.RULE_CREATED, "rule", rule.id,
                user_id=created_by, after=rule.to_dict()
            )

        log_action(self.logger, "info", f"Allocation rule created: {rule.name}",
                   user_id=created_by, action="create_rule", resource=f"rule:{rule.id}")
        return rule

    def get_rule(self, rule_id: str) -> Optional[AllocationRule]:
        data = self.storage.load(self.table_name, rule_id)
        if data:
            return AllocationRule.from_dict(data)
        return None

    def require_rule(self, rule_id: str) -> AllocationRule:
        rule = self.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Allocation rule {rule_id} not found", field_name="rule_id")
        return rule

    def list_rules(self, status: Optional[RuleStatus] = None) -> List[AllocationRule]:
        """Rules by descending priority, then name"""
        rules = [AllocationRule.from_dict(r) for r in self.storage.load_all(self.table_name)]
        if status:
            rules = [r for r in rules if r.status == status]
        return sorted(rules, key=lambda r: (-r.priority, r.name))

    def update_rule(self, rule_id: str, updated_by: Optional[str] = None, **changes: Any) -> AllocationRule:
        """Apply a partial update; keys left out or None keep their current value"""
        unknown = set(changes) - set(_RULE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown rule field: {', '.join(sorted(unknown))}")

        rule = self.require_rule(rule_id)
        before = rule.to_dict()

        for name, value in changes.items():
            if value is None:
                continue
            if name == 'rule_type' and not isinstance(value, RuleType):
                value = RuleType(value)
            elif name == 'status' and not isinstance(value, RuleStatus):
                value = RuleStatus(value)
            elif name in ('geographies', 'states', 'cities', 'buckets'):
                value = _normalize_list(value)
            setattr(rule, name, value)
        rule.updated_at = datetime.now(timezone.utc)
        validate_rule(rule)

        with self.storage.atomic():
            self.storage.save(self.table_name, rule.id, rule.to_dict())
            self.audit_trail.log_event(
                AuditEventType.RULE_UPDATED, "rule", rule.id,
                user_id=updated_by, before=before, after=rule.to_dict()
            )
        return rule

    def delete_rule(self, rule_id: str, deleted_by: Optional[str] = None) -> None:
        rule = self.require_rule(rule_id)
        with self.storage.atomic():
            self.storage.delete(self.table_name, rule_id)
            self.audit_trail.log_event(
                AuditEventType.RULE_DELETED, "rule", rule_id,
                user_id=deleted_by, before=rule.to_dict()
            )
        log_action(self.logger, "info", f"Allocation rule deleted: {rule.name}",
                   user_id=deleted_by, action="delete_rule", resource=f"rule:{rule_id}")


class RuleEvaluator:
    """Selects cases and agents for a rule and plans the distribution"""

    def __init__(
        self,
        rule_manager: RuleManager,
        agents: AgentDirectory,
        cases: CaseDirectory,
        store: AllocationStore,
        planner: Optional[DistributionPlanner] = None
    ):
        self.rule_manager = rule_manager
        self.agents = agents
        self.cases = cases
        self.store = store
        self.planner = planner or DistributionPlanner()

    def _effective_capacity(self, agent: Agent, rule: AllocationRule) -> int:
        if rule.max_cases_per_agent is not None:
            return min(agent.capacity, rule.max_cases_per_agent)
        return agent.capacity

    def _capacity(self, agent: Agent, rule: AllocationRule) -> AgentCapacity:
        active = self.store.agent_load(agent.agent_id)
        capacity = self._effective_capacity(agent, rule)
        return AgentCapacity(
            agent_id=agent.agent_id,
            agent_name=agent.name,
            geography=agent.geography_code,
            capacity=capacity,
            active_allocations=active,
            available_capacity=max(0, capacity - active)
        )

    def matching_cases(self, rule: AllocationRule, case_ids: Optional[List[int]] = None) -> List[int]:
        """Unallocated cases selected by the rule's geography, bucket and criteria"""
        criteria = parse_filters(rule.criteria)
        geographies = {g.lower() for g in rule.geographies}
        states = {s.lower() for s in rule.states}
        cities = {c.lower() for c in rule.cities}
        buckets = {b.lower() for b in rule.buckets}

        matched = []
        for case in self.cases.list_cases(case_ids):
            if self.store.current_owner(case.case_id) is not None:
                continue
            if rule.rule_type == RuleType.GEOGRAPHY:
                in_area = (
                    (case.geography_code or "").lower() in geographies
                    or (case.state or "").lower() in states
                    or (case.city or "").lower() in cities
                )
                if not in_area:
                    continue
            if buckets and (case.bucket or "").lower() not in buckets:
                continue
            if criteria and not matches_all(criteria, case.to_dict()):
                continue
            matched.append(case.case_id)
        return matched

    def eligible_agents(self, rule: AllocationRule, agent_ids: Optional[List[int]] = None,
                        keep_order: bool = False) -> List[AgentCapacity]:
        """
        Active agents with room under the rule, ranked by available
        capacity, most first.

        With ``keep_order`` the agents follow the order of ``agent_ids`` and
        full agents are kept, so each percentage share lines up with its agent.
        """
        wanted = agent_ids or rule.agent_ids or None
        if rule.rule_type == RuleType.GEOGRAPHY:
            area = list(rule.geographies) + list(rule.states) + list(rule.cities)
            candidates = self.agents.list_agents(active_only=True, geographies=area, agent_ids=wanted)
        else:
            candidates = self.agents.list_agents(active_only=True, agent_ids=wanted)

        capacities = [self._capacity(agent, rule) for agent in candidates]
        if keep_order and wanted:
            order = {agent_id: position for position, agent_id in enumerate(wanted)}
            capacities.sort(key=lambda c: order.get(c.agent_id, len(order)))
            return capacities

        capacities = [c for c in capacities if c.available_capacity > 0]
        capacities.sort(key=lambda c: (-c.available_capacity, c.agent_id))
        return capacities

    def evaluate(
        self,
        rule: AllocationRule,
        case_ids: Optional[List[int]] = None,
        agent_ids: Optional[List[int]] = None,
        percentages: Optional[List[Any]] = None,
        max_cases: Optional[int] = None
    ) -> RuleEvaluation:
        """
        Evaluate a rule and plan its distribution without writing anything.

        Args:
            rule: Rule to evaluate
            case_ids: Restrict matching to these cases
            agent_ids: Override the rule's agent list
            percentages: Override the rule's percentage split
            max_cases: Cap on the number of matched cases

        Returns:
            RuleEvaluation including the distribution plan
        """
        if rule.status == RuleStatus.INACTIVE:
            raise BusinessRuleError(f"Allocation rule {rule.id} is inactive", field_name="rule_id")
        if max_cases is not None and max_cases <= 0:
            raise ValidationError("max_cases must be positive", field_name="max_cases")

        matched = self.matching_cases(rule, case_ids)
        if max_cases is not None:
            matched = matched[:max_cases]

        if percentages is None and agent_ids is None:
            percentages = rule.percentages or None
        elif percentages is not None and agent_ids is None:
            agent_ids = rule.agent_ids

        agents = self.eligible_agents(rule, agent_ids, keep_order=bool(percentages))

        if percentages:
            strategy = DistributionStrategy.PERCENTAGE
            wanted = agent_ids or rule.agent_ids
            found = {a.agent_id for a in agents}
            missing = [agent_id for agent_id in wanted if agent_id not in found]
            if missing:
                raise BusinessRuleError(
                    f"Agents not eligible for percentage split: {missing}",
                    field_name="agent_ids"
                )
        elif rule.rule_type == RuleType.CAPACITY_BASED:
            strategy = DistributionStrategy.CAPACITY_FILL
        else:
            strategy = DistributionStrategy.EVEN

        evaluation = RuleEvaluation(
            rule=rule,
            matched_case_ids=matched,
            eligible_agents=agents,
            strategy=strategy,
            percentages=list(percentages) if percentages else None
        )
        if agents:
            evaluation.plan = self.planner.plan(
                matched, [a.to_slot() for a in agents], strategy, evaluation.percentages
            )
        else:
            evaluation.plan = DistributionPlan(strategy, unassigned_case_ids=list(matched))
        return evaluation

    def simulate(self, rule_id: str, **overrides: Any) -> RuleEvaluation:
        """Dry run of a stored rule; DRAFT rules may be simulated"""
        rule = self.rule_manager.require_rule(rule_id)
        return self.evaluate(rule, **overrides)

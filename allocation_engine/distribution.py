"""
Distribution Planner Module

Turns a set of case ids and a list of agents with spare capacity into a
concrete assignment plan. Planning is pure: nothing is written, and the
plan never gives an agent more cases than its available capacity or a
case to more than one agent.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .exceptions import ValidationError


class DistributionStrategy(Enum):
    """How cases are spread over agents"""
    EVEN = "EVEN"                    # Round-robin
    PERCENTAGE = "PERCENTAGE"        # Fixed share per agent
    CAPACITY_FILL = "CAPACITY_FILL"  # Most available capacity first, fill each agent


@dataclass
class AgentSlot:
    """An agent taking part in a plan and how many more cases it can take"""
    agent_id: int
    available: int
    name: Optional[str] = None


@dataclass
class Assignment:
    case_id: int
    agent_id: int


@dataclass
class DistributionPlan:
    """Outcome of planning; cases that could not be placed are listed separately"""
    strategy: DistributionStrategy
    assignments: List[Assignment] = field(default_factory=list)
    unassigned_case_ids: List[int] = field(default_factory=list)

    def counts_by_agent(self) -> Dict[int, int]:
        counts: Dict[int, int] = {}
        for assignment in self.assignments:
            counts[assignment.agent_id] = counts.get(assignment.agent_id, 0) + 1
        return counts

    def cases_for_agent(self, agent_id: int) -> List[int]:
        return [a.case_id for a in self.assignments if a.agent_id == agent_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'strategy': self.strategy.value,
            'assignments': [{'case_id': a.case_id, 'agent_id': a.agent_id} for a in self.assignments],
            'counts_by_agent': {str(k): v for k, v in self.counts_by_agent().items()},
            'unassigned_case_ids': list(self.unassigned_case_ids),
        }


def validate_percentages(agent_ids: Sequence[int], percentages: Sequence[Any]) -> List[Decimal]:
    """Check a percentage split: one positive share per agent, summing to 100"""
    if len(agent_ids) != len(percentages):
        raise ValidationError(
            f"Got {len(percentages)} percentages for {len(agent_ids)} agents",
            field_name="percentages"
        )
    try:
        shares = [Decimal(str(p)) for p in percentages]
    except InvalidOperation:
        raise ValidationError(f"Invalid percentage in {list(percentages)}", field_name="percentages")
    if any(share <= 0 for share in shares):
        raise ValidationError("Percentages must all be greater than zero", field_name="percentages")
    if sum(shares) != Decimal("100"):
        raise ValidationError(f"Percentages must sum to 100, got {sum(shares)}", field_name="percentages")
    return shares


def _unique(case_ids: Iterable[int]) -> List[int]:
    seen = set()
    result = []
    for case_id in case_ids:
        if case_id not in seen:
            seen.add(case_id)
            result.append(case_id)
    return result


class DistributionPlanner:
    """Builds distribution plans"""

    def plan(
        self,
        case_ids: Iterable[int],
        agents: Sequence[AgentSlot],
        strategy: DistributionStrategy,
        percentages: Optional[Sequence[Any]] = None
    ) -> DistributionPlan:
        """
        Distribute cases over agents.

        Args:
            case_ids: Cases to place; duplicates are ignored
            agents: Candidate agents in preference order
            strategy: Distribution strategy
            percentages: Share per agent, required for PERCENTAGE

        Returns:
            DistributionPlan with assignments and unassigned cases
        """
        cases = _unique(case_ids)
        if strategy == DistributionStrategy.PERCENTAGE:
            if percentages is None:
                raise ValidationError("PERCENTAGE distribution needs percentages", field_name="percentages")
            shares = validate_percentages([a.agent_id for a in agents], percentages)
            return self._percentage(cases, agents, shares)
        if strategy == DistributionStrategy.CAPACITY_FILL:
            return self._capacity_fill(cases, agents)
        return self._even(cases, agents)

    def _even(self, cases: List[int], agents: Sequence[AgentSlot]) -> DistributionPlan:
        plan = DistributionPlan(DistributionStrategy.EVEN)
        remaining = [max(0, a.available) for a in agents]
        cursor = 0

        for case_id in cases:
            placed = False
            for _ in range(len(agents)):
                index = cursor % len(agents)
                cursor += 1
                if remaining[index] > 0:
                    remaining[index] -= 1
                    plan.assignments.append(Assignment(case_id, agents[index].agent_id))
                    placed = True
                    break
            if not placed:
                plan.unassigned_case_ids.append(case_id)

        return plan

    def _percentage(self, cases: List[int], agents: Sequence[AgentSlot],
                    shares: List[Decimal]) -> DistributionPlan:
        plan = DistributionPlan(DistributionStrategy.PERCENTAGE)
        total = len(cases)

        counts = [
            int((Decimal(total) * share / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
            for share in shares
        ]
        # Rounding remainder goes to the first agent so every case is covered once
        counts[0] += total - sum(counts)
        if counts[0] < 0:
            overshoot = -counts[0]
            counts[0] = 0
            for index in range(len(counts) - 1, 0, -1):
                taken = min(counts[index], overshoot)
                counts[index] -= taken
                overshoot -= taken
                if overshoot == 0:
                    break

        position = 0
        for agent, count in zip(agents, counts):
            chunk = cases[position:position + count]
            position += count
            room = max(0, agent.available)
            for case_id in chunk[:room]:
                plan.assignments.append(Assignment(case_id, agent.agent_id))
            plan.unassigned_case_ids.extend(chunk[room:])

        return plan

    def _capacity_fill(self, cases: List[int], agents: Sequence[AgentSlot]) -> DistributionPlan:
        plan = DistributionPlan(DistributionStrategy.CAPACITY_FILL)
        ordered = sorted(agents, key=lambda a: a.available, reverse=True)

        position = 0
        for agent in ordered:
            room = max(0, agent.available)
            for case_id in cases[position:position + room]:
                plan.assignments.append(Assignment(case_id, agent.agent_id))
            position += min(room, max(0, len(cases) - position))
            if position >= len(cases):
                break

        plan.unassigned_case_ids.extend(cases[position:])
        return plan

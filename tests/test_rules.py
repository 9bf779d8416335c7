"""
Tests for allocation rule management and evaluation
"""

import pytest

from allocation_engine.models import RuleStatus, RuleType
from allocation_engine.distribution import DistributionStrategy
from allocation_engine.audit import AuditEventType
from allocation_engine.exceptions import BusinessRuleError, NotFoundError, ValidationError


class TestRuleManagement:
    """Creating, updating and deleting rules"""

    def test_create_rule(self, system):
        """A valid GEOGRAPHY rule is stored and audited"""
        rule = system.rule_manager.create_rule(
            name="Pune B1", rule_type=RuleType.GEOGRAPHY, created_by="ops",
            geographies=[" MH-PUNE "], buckets=["B1"]
        )
        assert rule.status == RuleStatus.ACTIVE
        assert rule.geographies == ["MH-PUNE"]
        assert system.rule_manager.get_rule(rule.id).name == "Pune B1"

        events = system.audit_trail.get_events_for_entity("rule", rule.id)
        assert [e.event_type for e in events] == [AuditEventType.RULE_CREATED]

    def test_geography_rule_needs_an_area(self, system):
        """A GEOGRAPHY rule without geographies, states or cities is rejected"""
        with pytest.raises(ValidationError) as exc_info:
            system.rule_manager.create_rule(name="Nowhere", rule_type=RuleType.GEOGRAPHY)
        assert exc_info.value.field_name == "geographies"
        assert system.rule_manager.list_rules() == []

    def test_name_required(self, system):
        with pytest.raises(ValidationError):
            system.rule_manager.create_rule(name="  ", rule_type=RuleType.CAPACITY_BASED)

    def test_percentages_validated(self, system):
        with pytest.raises(ValidationError):
            system.rule_manager.create_rule(
                name="Split", rule_type=RuleType.CAPACITY_BASED,
                agent_ids=[1, 2], percentages=[50, 40]
            )
        with pytest.raises(ValidationError):
            system.rule_manager.create_rule(
                name="Split", rule_type=RuleType.CAPACITY_BASED, percentages=[100]
            )

    def test_invalid_criteria_rejected(self, system):
        with pytest.raises(ValidationError):
            system.rule_manager.create_rule(
                name="Bad filter", rule_type=RuleType.CAPACITY_BASED,
                criteria=[{"type": "NUMERIC", "field": "dpd", "operator": "IN", "value": 30}]
            )

    def test_list_rules_by_priority(self, system):
        system.rule_manager.create_rule(name="Low", rule_type=RuleType.CAPACITY_BASED, priority=1)
        system.rule_manager.create_rule(name="High", rule_type=RuleType.CAPACITY_BASED, priority=5)
        system.rule_manager.create_rule(
            name="Draft", rule_type=RuleType.CAPACITY_BASED, status=RuleStatus.DRAFT
        )

        assert [r.name for r in system.rule_manager.list_rules()] == ["High", "Low", "Draft"]
        assert [r.name for r in system.rule_manager.list_rules(RuleStatus.DRAFT)] == ["Draft"]

    def test_update_rule(self, system):
        """Partial updates keep other fields and are revalidated"""
        rule = system.rule_manager.create_rule(
            name="Pune", rule_type=RuleType.GEOGRAPHY, geographies=["MH-PUNE"]
        )
        updated = system.rule_manager.update_rule(rule.id, updated_by="ops", buckets=["B2"], name=None)
        assert updated.name == "Pune"
        assert updated.buckets == ["B2"]

        with pytest.raises(ValidationError):
            system.rule_manager.update_rule(rule.id, geographies=[])

        with pytest.raises(ValidationError):
            system.rule_manager.update_rule(rule.id, colour="blue")

    def test_delete_rule(self, system):
        rule = system.rule_manager.create_rule(name="Temp", rule_type=RuleType.CAPACITY_BASED)
        system.rule_manager.delete_rule(rule.id, deleted_by="ops")
        assert system.rule_manager.get_rule(rule.id) is None
        with pytest.raises(NotFoundError):
            system.rule_manager.delete_rule(rule.id)


class TestRuleEvaluation:
    """Selecting cases and agents and planning the distribution"""

    def test_geography_rule_matches_area_and_bucket(self, system):
        rule = system.rule_manager.create_rule(
            name="Pune B1", rule_type=RuleType.GEOGRAPHY, geographies=["MH-PUNE"], buckets=["B1"]
        )
        evaluation = system.evaluator.simulate(rule.id)
        assert evaluation.matched_case_ids == [100, 102, 104, 106, 108]
        assert [a.agent_id for a in evaluation.eligible_agents] == [1, 2, 3]
        assert evaluation.strategy == DistributionStrategy.EVEN

    def test_city_matches_cases_and_agents(self, system):
        """A rule naming a city selects cases and agents from that city"""
        system.cases.register_case(200, geography_code="MH-MUMBAI", state="Maharashtra", city="Mumbai", bucket="B1")
        rule = system.rule_manager.create_rule(name="Mumbai", rule_type=RuleType.GEOGRAPHY, cities=["mumbai"])

        evaluation = system.evaluator.simulate(rule.id)
        assert evaluation.matched_case_ids == [200]
        assert [a.agent_id for a in evaluation.eligible_agents] == [4]

    def test_allocated_cases_are_not_matched(self, system):
        system.orchestrator.allocate(100, 1)
        rule = system.rule_manager.create_rule(name="All", rule_type=RuleType.CAPACITY_BASED)
        assert 100 not in system.evaluator.simulate(rule.id).matched_case_ids

    def test_criteria_filters(self, system):
        rule = system.rule_manager.create_rule(
            name="High DPD", rule_type=RuleType.CAPACITY_BASED,
            criteria=[{"type": "NUMERIC", "field": "dpd", "operator": ">=", "value": 37}]
        )
        assert system.evaluator.simulate(rule.id).matched_case_ids == [107, 108, 109]

    def test_capacity_rule_respects_max_cases_per_agent(self, system):
        """No agent is planned beyond its effective capacity"""
        rule = system.rule_manager.create_rule(
            name="Cap", rule_type=RuleType.CAPACITY_BASED, agent_ids=[1, 2], max_cases_per_agent=3
        )
        evaluation = system.evaluator.simulate(rule.id)
        counts = evaluation.plan.counts_by_agent()
        assert evaluation.strategy == DistributionStrategy.CAPACITY_FILL
        assert counts == {1: 3, 2: 3}
        assert len(evaluation.plan.unassigned_case_ids) == 4

    def test_full_agents_are_not_eligible(self, system):
        system.agents.set_capacity(1, 1)
        system.orchestrator.allocate(100, 1)
        rule = system.rule_manager.create_rule(name="Pune", rule_type=RuleType.GEOGRAPHY, geographies=["MH-PUNE"])
        assert 1 not in [a.agent_id for a in system.evaluator.simulate(rule.id).eligible_agents]

    def test_inactive_agents_are_not_eligible(self, system):
        system.agents.set_active(2, False)
        rule = system.rule_manager.create_rule(name="Pune", rule_type=RuleType.GEOGRAPHY, geographies=["MH-PUNE"])
        assert [a.agent_id for a in system.evaluator.simulate(rule.id).eligible_agents] == [1, 3]

    def test_percentage_override(self, system):
        rule = system.rule_manager.create_rule(name="Pune", rule_type=RuleType.GEOGRAPHY, geographies=["MH-PUNE"])
        evaluation = system.evaluator.simulate(rule.id, agent_ids=[1, 2], percentages=[70, 30])
        assert evaluation.strategy == DistributionStrategy.PERCENTAGE
        assert evaluation.plan.counts_by_agent() == {1: 7, 2: 3}
        assert evaluation.to_dict()["suggested_distribution"] == {"1": 7, "2": 3}

    def test_percentage_agent_must_be_eligible(self, system):
        """An agent outside the rule's area cannot take a share"""
        rule = system.rule_manager.create_rule(name="Pune", rule_type=RuleType.GEOGRAPHY, geographies=["MH-PUNE"])
        with pytest.raises(BusinessRuleError):
            system.evaluator.simulate(rule.id, agent_ids=[1, 4], percentages=[50, 50])

    def test_inactive_rule_cannot_be_evaluated(self, system):
        rule = system.rule_manager.create_rule(
            name="Old", rule_type=RuleType.CAPACITY_BASED, status=RuleStatus.INACTIVE
        )
        with pytest.raises(BusinessRuleError):
            system.evaluator.simulate(rule.id)

    def test_draft_rule_can_be_simulated(self, system):
        rule = system.rule_manager.create_rule(
            name="Draft", rule_type=RuleType.CAPACITY_BASED, status=RuleStatus.DRAFT
        )
        assert len(system.evaluator.simulate(rule.id).matched_case_ids) == 10

    def test_max_cases(self, system):
        rule = system.rule_manager.create_rule(name="All", rule_type=RuleType.CAPACITY_BASED)
        assert len(system.evaluator.simulate(rule.id, max_cases=4).matched_case_ids) == 4
        with pytest.raises(ValidationError):
            system.evaluator.simulate(rule.id, max_cases=0)

    def test_simulation_writes_nothing(self, system):
        rule = system.rule_manager.create_rule(name="All", rule_type=RuleType.CAPACITY_BASED)
        system.evaluator.simulate(rule.id)
        assert system.store.active_allocations() == []
        assert system.store.all_agent_loads() == {}

    def test_unknown_rule(self, system):
        with pytest.raises(NotFoundError):
            system.evaluator.simulate("missing")

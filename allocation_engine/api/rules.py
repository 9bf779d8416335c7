"""
Allocation rule endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .deps import AllocationSystem, get_allocation_system
from .schemas import ApplyRuleRequest, CreateRuleRequest, SimulateRuleRequest, UpdateRuleRequest
from ..models import RuleStatus, RuleType
from ..exceptions import ValidationError


router = APIRouter()


def _enum(enum_class, value: str, field_name: str):
    try:
        return enum_class(value.upper())
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: '{value}'", field_name=field_name)


@router.get("")
def list_rules(
    status_filter: Optional[str] = Query(None, alias="status"),
    system: AllocationSystem = Depends(get_allocation_system)
):
    """List allocation rules by priority"""
    rule_status = _enum(RuleStatus, status_filter, "status") if status_filter else None
    return [r.to_dict() for r in system.rule_manager.list_rules(status=rule_status)]


@router.get("/{rule_id}")
def get_rule(rule_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Get allocation rule by ID"""
    return system.rule_manager.require_rule(rule_id).to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_rule(request: CreateRuleRequest, system: AllocationSystem = Depends(get_allocation_system)):
    """Create a new allocation rule"""
    rule = system.rule_manager.create_rule(
        name=request.name,
        rule_type=_enum(RuleType, request.rule_type, "rule_type"),
        created_by=request.created_by,
        status=_enum(RuleStatus, request.status, "status"),
        description=request.description,
        geographies=request.geographies,
        states=request.states,
        cities=request.cities,
        buckets=request.buckets,
        criteria=request.criteria,
        agent_ids=request.agent_ids,
        percentages=request.percentages,
        max_cases_per_agent=request.max_cases_per_agent,
        priority=request.priority
    )
    return rule.to_dict()


@router.put("/{rule_id}")
def update_rule(
    rule_id: str,
    request: UpdateRuleRequest,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Update an allocation rule; omitted fields keep their value"""
    changes = request.model_dump(exclude={'updated_by'}, exclude_none=True)
    if 'rule_type' in changes:
        changes['rule_type'] = _enum(RuleType, changes['rule_type'], "rule_type")
    if 'status' in changes:
        changes['status'] = _enum(RuleStatus, changes['status'], "status")
    rule = system.rule_manager.update_rule(rule_id, updated_by=request.updated_by, **changes)
    return rule.to_dict()


@router.delete("/{rule_id}")
def delete_rule(
    rule_id: str,
    deleted_by: Optional[str] = None,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Delete an allocation rule"""
    system.rule_manager.delete_rule(rule_id, deleted_by=deleted_by)
    return {"message": "Allocation rule deleted successfully"}


@router.post("/{rule_id}/simulate")
def simulate_rule(
    rule_id: str,
    request: Optional[SimulateRuleRequest] = None,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Preview what applying a rule would do, without changing anything"""
    overrides = request.model_dump(exclude_none=True) if request else {}
    return system.evaluator.simulate(rule_id, **overrides).to_dict()


@router.post("/{rule_id}/apply")
def apply_rule(
    rule_id: str,
    request: ApplyRuleRequest,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Allocate the cases a rule matches; dry_run only simulates"""
    return system.orchestrator.apply_rule(
        rule_id,
        applied_by=request.applied_by,
        dry_run=request.dry_run,
        agent_ids=request.agent_ids,
        percentages=request.percentages,
        case_ids=request.case_ids,
        max_cases=request.max_cases
    )

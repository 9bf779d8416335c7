"""
Pydantic schemas for API requests and responses
"""

from typing import Any, Dict, List, Optional
from fastapi import Response
from pydantic import BaseModel, Field

from ..models import AllocationBatch, AllocationJob, BatchType


# Rule schemas
class CreateRuleRequest(BaseModel):
    name: str
    rule_type: str = Field(..., description="Rule type (GEOGRAPHY, CAPACITY_BASED)")
    status: str = Field("ACTIVE", description="Rule status (DRAFT, ACTIVE, INACTIVE)")
    description: Optional[str] = None
    geographies: List[str] = Field(default_factory=list)
    states: List[str] = Field(default_factory=list)
    cities: List[str] = Field(default_factory=list)
    buckets: List[str] = Field(default_factory=list)
    criteria: List[Dict[str, Any]] = Field(default_factory=list, description="Typed filters, see parse_filter")
    agent_ids: List[int] = Field(default_factory=list)
    percentages: List[float] = Field(default_factory=list)
    max_cases_per_agent: Optional[int] = None
    priority: int = 0
    created_by: Optional[str] = None


class UpdateRuleRequest(BaseModel):
    name: Optional[str] = None
    rule_type: Optional[str] = None
    status: Optional[str] = None
    description: Optional[str] = None
    geographies: Optional[List[str]] = None
    states: Optional[List[str]] = None
    cities: Optional[List[str]] = None
    buckets: Optional[List[str]] = None
    criteria: Optional[List[Dict[str, Any]]] = None
    agent_ids: Optional[List[int]] = None
    percentages: Optional[List[float]] = None
    max_cases_per_agent: Optional[int] = None
    priority: Optional[int] = None
    updated_by: Optional[str] = None


class SimulateRuleRequest(BaseModel):
    agent_ids: Optional[List[int]] = None
    percentages: Optional[List[float]] = None
    case_ids: Optional[List[int]] = None
    max_cases: Optional[int] = None


class ApplyRuleRequest(SimulateRuleRequest):
    dry_run: bool = False
    applied_by: str = "system"


# Allocation schemas
class AllocateCaseRequest(BaseModel):
    agent_id: int
    reason: Optional[str] = None
    allocated_by: str = "system"
    secondary_agent_id: Optional[int] = None
    allocation_type: str = Field("PRIMARY", description="PRIMARY or SPLIT")
    workload_percentage: Optional[float] = None


class BulkDeallocateRequest(BaseModel):
    case_ids: List[int]
    reason: Optional[str] = None
    deallocated_by: str = "system"


# Reallocation schemas
class ReallocateByAgentRequest(BaseModel):
    from_agent_id: int
    to_agent_id: int
    reason: Optional[str] = None
    requested_by: str = "system"


class ReallocateByFilterRequest(BaseModel):
    filters: List[Dict[str, Any]] = Field(..., description="Typed filters, e.g. {'type': 'text', 'field': 'bucket', 'operator': '=', 'value': 'B2'}")
    to_agent_id: int
    from_agent_id: Optional[int] = None
    reason: Optional[str] = None
    requested_by: str = "system"


def batch_view(batch: AllocationBatch) -> Dict[str, Any]:
    """Batch status payload; contact batches report records and updates"""
    view = {
        'batch_id': batch.batch_id,
        'batch_type': batch.batch_type.value,
        'file_name': batch.file_name,
        'status': batch.status.value,
        'uploaded_by': batch.uploaded_by,
        'uploaded_at': batch.uploaded_at.isoformat() if batch.uploaded_at else None,
        'completed_at': batch.completed_at.isoformat() if batch.completed_at else None,
    }
    if batch.batch_type == BatchType.CONTACT_UPDATE:
        view.update({
            'total_records': batch.total_cases,
            'successful_updates': batch.successful_allocations,
            'failed_updates': batch.failed_allocations,
        })
    else:
        view.update({
            'total_cases': batch.total_cases,
            'successful_allocations': batch.successful_allocations,
            'failed_allocations': batch.failed_allocations,
        })
    return view


def job_view(job: AllocationJob) -> Dict[str, Any]:
    return {
        'job_id': job.job_id,
        'job_type': job.job_type.value,
        'status': job.status.value,
        'estimated_cases': job.estimated_cases,
        'processed_cases': job.processed_cases,
        'successful': job.successful,
        'failed': job.failed,
        'failures': job.failures,
        'parameters': job.parameters,
        'requested_by': job.requested_by,
        'started_at': job.started_at.isoformat() if job.started_at else None,
        'completed_at': job.completed_at.isoformat() if job.completed_at else None,
        'error_message': job.error_message,
    }


def csv_response(content: str, filename: str) -> Response:
    """CSV download with an attachment filename"""
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'}
    )

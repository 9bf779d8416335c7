"""
Reallocation endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile, status

from .deps import AllocationSystem, get_allocation_system
from .schemas import ReallocateByAgentRequest, ReallocateByFilterRequest, batch_view, job_view, csv_response
from .allocations import batch_page, upload_file
from ..models import BatchType
from ..ingestion import BatchIngestionPipeline


router = APIRouter()


@router.post("/upload", status_code=status.HTTP_202_ACCEPTED)
async def upload_reallocations(
    file: UploadFile = File(...),
    uploaded_by: str = Query("system"),
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Upload a reallocation CSV; processing continues in the background"""
    return await upload_file(system, BatchType.REALLOCATION, file, uploaded_by)


@router.get("/upload/template")
def download_reallocation_template():
    """Download the reallocation upload template"""
    return csv_response(BatchIngestionPipeline.template(BatchType.REALLOCATION), "reallocation_template.csv")


@router.post("/by-agent", status_code=status.HTTP_202_ACCEPTED)
def reallocate_by_agent(request: ReallocateByAgentRequest, system: AllocationSystem = Depends(get_allocation_system)):
    """Move every case of one agent to another agent"""
    job = system.orchestrator.reallocate_by_agent(
        request.from_agent_id, request.to_agent_id,
        reason=request.reason, requested_by=request.requested_by
    )
    return job_view(job)


@router.post("/by-filter", status_code=status.HTTP_202_ACCEPTED)
def reallocate_by_filter(request: ReallocateByFilterRequest, system: AllocationSystem = Depends(get_allocation_system)):
    """Move allocated cases matching the filters to one agent"""
    job = system.orchestrator.reallocate_by_filter(
        request.filters, request.to_agent_id, reason=request.reason,
        requested_by=request.requested_by, from_agent_id=request.from_agent_id
    )
    return job_view(job)


@router.get("/jobs/{job_id}")
def get_job_status(job_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Progress and outcome of a reallocation job"""
    return job_view(system.orchestrator.get_job(job_id))


@router.get("/batches")
def list_reallocation_batches(
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 0,
    size: int = 20,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """List reallocation batches, newest first"""
    return batch_page(system, BatchType.REALLOCATION, status_filter, start_date, end_date, page, size)


@router.get("/{batch_id}/status")
def get_reallocation_batch_status(batch_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Get reallocation batch status"""
    return batch_view(system.ingestion.get_batch(batch_id, BatchType.REALLOCATION))


@router.get("/{batch_id}/errors")
def export_failed_reallocation_rows(batch_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Download the failed rows of a reallocation batch"""
    system.ingestion.get_batch(batch_id, BatchType.REALLOCATION)
    return csv_response(system.ingestion.export_failed_rows(batch_id), f"reallocation_errors_{batch_id}.csv")

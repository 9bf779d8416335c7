"""
Allocation endpoints: uploads, batches, case ownership, contact updates,
errors and audit
"""

from datetime import date, datetime, time, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile, status
from fastapi.concurrency import run_in_threadpool

from .deps import AllocationSystem, get_allocation_system
from .schemas import AllocateCaseRequest, BulkDeallocateRequest, batch_view, csv_response
from ..models import AllocationType, BatchStatus, BatchType
from ..ingestion import BatchIngestionPipeline
from ..exceptions import NotFoundError, ValidationError


router = APIRouter()


def parse_batch_status(value: Optional[str]) -> Optional[BatchStatus]:
    if value is None:
        return None
    try:
        return BatchStatus(value.upper())
    except ValueError:
        raise ValidationError(f"Invalid batch status: '{value}'", field_name="status")


def day_bounds(start_date: Optional[date], end_date: Optional[date]):
    start = datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None
    end = datetime.combine(end_date, time.max, tzinfo=timezone.utc) if end_date else None
    return start, end


def batch_page(system: AllocationSystem, batch_type: BatchType, status_filter: Optional[str],
               start_date: Optional[date], end_date: Optional[date], page: int, size: int):
    start, end = day_bounds(start_date, end_date)
    result = system.ingestion.list_batches(
        batch_type=batch_type, status=parse_batch_status(status_filter),
        start=start, end=end, page=page, size=size
    )
    result['items'] = [batch_view(b) for b in result['items']]
    return result


async def upload_file(system: AllocationSystem, batch_type: BatchType, file: UploadFile, uploaded_by: str):
    content = await file.read()
    # Staging writes the file and the batch row; keep that off the event loop
    batch = await run_in_threadpool(
        system.ingestion.upload, batch_type, content, file.filename or "", uploaded_by=uploaded_by
    )
    return batch_view(batch)


# Allocation uploads
@router.get("/upload/template")
def download_allocation_template():
    """Download the allocation upload template"""
    return csv_response(BatchIngestionPipeline.template(BatchType.ALLOCATION), "allocation_template.csv")


@router.post("/upload", status_code=status.HTTP_202_ACCEPTED)
async def upload_allocations(
    file: UploadFile = File(...),
    uploaded_by: str = Query("system"),
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Upload an allocation CSV; processing continues in the background"""
    return await upload_file(system, BatchType.ALLOCATION, file, uploaded_by)


@router.get("/{batch_id}/status")
def get_allocation_batch_status(batch_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Get allocation batch status"""
    return batch_view(system.ingestion.get_batch(batch_id, BatchType.ALLOCATION))


@router.get("/{batch_id}/errors")
def export_failed_allocation_rows(batch_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Download the failed rows of an allocation batch"""
    system.ingestion.get_batch(batch_id, BatchType.ALLOCATION)
    return csv_response(system.ingestion.export_failed_rows(batch_id), f"allocation_errors_{batch_id}.csv")


@router.get("/{batch_id}/export")
def export_allocation_batch(batch_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Download every row of an allocation batch"""
    return csv_response(system.ingestion.export_batch(batch_id), f"allocation_batch_{batch_id}.csv")


@router.get("/batches")
def list_allocation_batches(
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 0,
    size: int = 20,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """List allocation batches, newest first"""
    return batch_page(system, BatchType.ALLOCATION, status_filter, start_date, end_date, page, size)


@router.get("/summary")
def get_allocation_summary(system: AllocationSystem = Depends(get_allocation_system)):
    """Totals over all allocation batches"""
    return system.orchestrator.get_allocation_summary()


@router.get("/summary/{day}")
def get_allocation_summary_by_date(day: date, system: AllocationSystem = Depends(get_allocation_system)):
    """Totals over allocation batches uploaded on one day"""
    return system.orchestrator.get_allocation_summary_by_date(day)


# Case ownership
@router.get("/cases/allocated")
def get_allocated_cases(
    agent_id: Optional[int] = None,
    geography: Optional[str] = None,
    page: int = 0,
    size: int = 50,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Page through active allocations"""
    result = system.orchestrator.get_allocated_cases(agent_id=agent_id, geography=geography, page=page, size=size)
    result['items'] = [a.to_dict() for a in result['items']]
    return result


@router.get("/cases/{case_id}/allocation")
def get_case_allocation(case_id: int, system: AllocationSystem = Depends(get_allocation_system)):
    """Get the current allocation of a case"""
    system.cases.require_case(case_id)
    allocation = system.orchestrator.get_case_allocation(case_id)
    if allocation is None:
        raise NotFoundError(f"Case {case_id} is not allocated", field_name="case_id")
    return allocation.to_dict()


@router.get("/cases/{case_id}/allocation-history")
def get_case_allocation_history(case_id: int, system: AllocationSystem = Depends(get_allocation_system)):
    """Ownership history of a case, oldest first"""
    system.cases.require_case(case_id)
    return [h.to_dict() for h in system.orchestrator.get_case_history(case_id)]


@router.post("/cases/{case_id}")
def allocate_case(
    case_id: int,
    request: AllocateCaseRequest,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Allocate a case to an agent, moving it if another agent owns it"""
    try:
        allocation_type = AllocationType(request.allocation_type.upper())
    except ValueError:
        raise ValidationError(f"Invalid allocation_type: '{request.allocation_type}'", field_name="allocation_type")

    allocation = system.orchestrator.allocate(
        case_id,
        request.agent_id,
        allocated_by=request.allocated_by,
        reason=request.reason,
        secondary_agent_id=request.secondary_agent_id,
        allocation_type=allocation_type,
        workload_percentage=request.workload_percentage
    )
    return allocation.to_dict()


@router.delete("/cases/{case_id}")
def deallocate_case(
    case_id: int,
    reason: str = Query(...),
    deallocated_by: str = Query("system"),
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Remove the current owner of a case"""
    allocation = system.orchestrator.deallocate(case_id, deallocated_by=deallocated_by, reason=reason)
    return {"case_id": case_id, "previous_agent_id": allocation.primary_agent_id, "message": "Case deallocated"}


@router.post("/deallocate/bulk")
def bulk_deallocate(request: BulkDeallocateRequest, system: AllocationSystem = Depends(get_allocation_system)):
    """Deallocate several cases, reporting the outcome per case"""
    return system.orchestrator.bulk_deallocate(
        request.case_ids, deallocated_by=request.deallocated_by, reason=request.reason
    )


@router.get("/agents/workload")
def get_agent_workload(
    agent_ids: Optional[List[int]] = Query(None),
    geographies: Optional[List[str]] = Query(None),
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Capacity, active load and utilization per agent"""
    return [w.to_dict() for w in system.orchestrator.get_agent_workload(agent_ids=agent_ids, geographies=geographies)]


@router.get("/consistency")
def verify_consistency(system: AllocationSystem = Depends(get_allocation_system)):
    """Check the ownership invariants and load counters"""
    return system.orchestrator.verify_consistency()


# Contact updates
@router.get("/contacts/upload/template")
def download_contact_template(update_type: Optional[str] = None):
    """Download the contact update template, optionally for one update type"""
    return csv_response(BatchIngestionPipeline.template(BatchType.CONTACT_UPDATE, update_type), "contact_update_template.csv")


@router.post("/contacts/upload", status_code=status.HTTP_202_ACCEPTED)
async def upload_contact_updates(
    file: UploadFile = File(...),
    uploaded_by: str = Query("system"),
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Upload a contact update CSV; processing continues in the background"""
    return await upload_file(system, BatchType.CONTACT_UPDATE, file, uploaded_by)


@router.get("/contacts/{batch_id}/status")
def get_contact_batch_status(batch_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Get contact update batch status"""
    return batch_view(system.ingestion.get_batch(batch_id, BatchType.CONTACT_UPDATE))


@router.get("/contacts/{batch_id}/errors")
def export_failed_contact_rows(batch_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Download the failed rows of a contact update batch"""
    system.ingestion.get_batch(batch_id, BatchType.CONTACT_UPDATE)
    return csv_response(system.ingestion.export_failed_rows(batch_id), f"contact_update_errors_{batch_id}.csv")


# Errors
@router.get("/errors")
def list_errors(
    error_type: Optional[str] = None,
    module: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """List batch errors"""
    start, end = day_bounds(start_date, end_date)
    errors = system.store.list_errors(
        start=start, end=end,
        error_type=error_type.upper() if error_type else None,
        module=module.upper() if module else None
    )
    return [e.to_dict() for e in errors]


@router.get("/errors/{error_id}")
def get_error_details(error_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Get one batch error"""
    error = system.store.get_error(error_id)
    if error is None:
        raise NotFoundError(f"Error {error_id} not found", field_name="error_id")
    return error.to_dict()


# Audit
@router.get("/audit")
def get_audit_logs(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    entity_type: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: Optional[int] = None,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """List audit events"""
    start, end = day_bounds(start_date, end_date)
    events = system.orchestrator.get_audit_logs(
        start_time=start, end_time=end, entity_type=entity_type, user_id=user_id, limit=limit
    )
    return [e.to_dict() for e in events]


@router.get("/audit/{case_id}")
def get_case_audit(case_id: int, system: AllocationSystem = Depends(get_allocation_system)):
    """Audit events for one case"""
    return [e.to_dict() for e in system.orchestrator.get_case_audit(case_id)]

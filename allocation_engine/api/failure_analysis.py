"""
Failure analysis endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends

from .deps import AllocationSystem, get_allocation_system


router = APIRouter()


@router.get("/batch/{batch_id}")
def analyze_batch(batch_id: str, system: AllocationSystem = Depends(get_allocation_system)):
    """Failure breakdown for one batch"""
    return system.failure_analyzer.analyze_batch(batch_id)


@router.get("/summary")
def get_failure_summary(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Failure summary over a date range"""
    return system.failure_analyzer.summary(start_date, end_date)


@router.get("/top-reasons")
def get_top_failure_reasons(
    limit: int = 10,
    batch_id: Optional[str] = None,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Most frequent failure reasons"""
    return system.failure_analyzer.top_reasons(limit=limit, batch_id=batch_id)


@router.get("/by-error-type")
def get_failures_by_error_type(
    batch_id: Optional[str] = None,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Failure counts per error type"""
    return system.failure_analyzer.by_error_type(batch_id)


@router.get("/by-field")
def get_failures_by_field(
    batch_id: Optional[str] = None,
    system: AllocationSystem = Depends(get_allocation_system)
):
    """Failure counts per offending field"""
    return system.failure_analyzer.by_field(batch_id)

"""
Allocation Domain Models

Records for case ownership, ownership history, allocation rules, upload
batches and their row errors, and background jobs.
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum

from .storage import StorageRecord


class AllocationStatus(Enum):
    """Lifecycle of a case allocation row"""
    ALLOCATED = "ALLOCATED"
    DEALLOCATED = "DEALLOCATED"


class AllocationType(Enum):
    """How a case is worked"""
    PRIMARY = "PRIMARY"    # Single owner
    SPLIT = "SPLIT"        # Primary owner plus a secondary agent


class OwnerType(Enum):
    """Kind of principal that owns a case"""
    USER = "USER"
    AGENT = "AGENT"
    AGENCY = "AGENCY"


class AllocationAction(Enum):
    """Actions recorded in allocation history"""
    ALLOCATE = "ALLOCATE"
    REALLOCATE = "REALLOCATE"
    DEALLOCATE = "DEALLOCATE"


class RuleType(Enum):
    """Allocation rule kinds"""
    GEOGRAPHY = "GEOGRAPHY"
    CAPACITY_BASED = "CAPACITY_BASED"


class RuleStatus(Enum):
    """Allocation rule lifecycle"""
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class BatchType(Enum):
    """Kinds of uploaded files"""
    ALLOCATION = "ALLOCATION"
    REALLOCATION = "REALLOCATION"
    CONTACT_UPDATE = "CONTACT_UPDATE"


class BatchStatus(Enum):
    """Upload batch lifecycle, in processing order"""
    UPLOADED = "UPLOADED"
    PARSING = "PARSING"
    VALIDATING = "VALIDATING"
    APPLYING = "APPLYING"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_ERRORS = "COMPLETED_WITH_ERRORS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_BATCH_STATUSES

    @property
    def is_processing(self) -> bool:
        return self in PROCESSING_BATCH_STATUSES

    def can_transition_to(self, target: 'BatchStatus') -> bool:
        """
        Statuses only move forward. A processing status may be re-entered so
        an interrupted batch can resume; terminal statuses are final.
        """
        if self.is_terminal:
            return False
        if target == self:
            return self.is_processing
        return _BATCH_STATUS_RANK[target] > _BATCH_STATUS_RANK[self]


PROCESSING_BATCH_STATUSES = frozenset({
    BatchStatus.PARSING, BatchStatus.VALIDATING, BatchStatus.APPLYING
})
_TERMINAL_BATCH_STATUSES = frozenset({
    BatchStatus.COMPLETED, BatchStatus.COMPLETED_WITH_ERRORS, BatchStatus.FAILED
})
_BATCH_STATUS_RANK = {
    BatchStatus.UPLOADED: 0,
    BatchStatus.PARSING: 1,
    BatchStatus.VALIDATING: 2,
    BatchStatus.APPLYING: 3,
    BatchStatus.COMPLETED: 4,
    BatchStatus.COMPLETED_WITH_ERRORS: 4,
    BatchStatus.FAILED: 4,
}


class ErrorType(Enum):
    """Classification of row and batch failures"""
    VALIDATION = "VALIDATION"
    BUSINESS_RULE = "BUSINESS_RULE"
    SYSTEM = "SYSTEM"
    DATA_INTEGRITY = "DATA_INTEGRITY"
    PROCESSING = "PROCESSING"


class ErrorModule(Enum):
    """Pipeline that produced a batch error"""
    ALLOCATION = "ALLOCATION"
    REALLOCATION = "REALLOCATION"
    CONTACT_UPDATE = "CONTACT_UPDATE"


class JobType(Enum):
    """Background job kinds"""
    REALLOCATE_BY_AGENT = "REALLOCATE_BY_AGENT"
    REALLOCATE_BY_FILTER = "REALLOCATE_BY_FILTER"


class JobStatus(Enum):
    """Background job lifecycle"""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_ERRORS = "COMPLETED_WITH_ERRORS"
    FAILED = "FAILED"


@dataclass
class CaseAllocation(StorageRecord):
    """
    Ownership of one case by one agent over a period of time.

    At most one row per case is ALLOCATED; older rows are kept as
    DEALLOCATED and never removed.
    """
    case_id: int
    primary_agent_id: int
    status: AllocationStatus
    allocated_at: datetime
    external_case_id: Optional[str] = None
    secondary_agent_id: Optional[int] = None
    allocated_to_type: OwnerType = OwnerType.USER
    allocation_type: AllocationType = AllocationType.PRIMARY
    workload_percentage: Optional[float] = None
    geography_code: Optional[str] = None
    allocated_by: Optional[str] = None
    deallocated_at: Optional[datetime] = None
    allocation_rule_id: Optional[str] = None
    batch_id: Optional[str] = None

    _enum_fields = {
        'status': AllocationStatus,
        'allocated_to_type': OwnerType,
        'allocation_type': AllocationType,
    }
    _datetime_fields = ('allocated_at', 'deallocated_at')

    @property
    def is_active(self) -> bool:
        return self.status == AllocationStatus.ALLOCATED


@dataclass
class AllocationHistory(StorageRecord):
    """Append-only record of one ownership change"""
    case_id: int
    action: AllocationAction
    allocated_at: datetime
    external_case_id: Optional[str] = None
    allocated_to_user_id: Optional[int] = None     # New owner, None on deallocation
    new_owner_type: Optional[OwnerType] = None
    allocated_from_user_id: Optional[int] = None   # Previous owner, None on first allocation
    previous_owner_type: Optional[OwnerType] = None
    reason: Optional[str] = None
    allocated_by: Optional[str] = None
    batch_id: Optional[str] = None

    _enum_fields = {
        'action': AllocationAction,
        'new_owner_type': OwnerType,
        'previous_owner_type': OwnerType,
    }
    _datetime_fields = ('allocated_at',)


@dataclass
class AllocationRule(StorageRecord):
    """Configured policy that selects cases and agents for allocation"""
    name: str
    rule_type: RuleType
    status: RuleStatus = RuleStatus.ACTIVE
    description: Optional[str] = None
    geographies: List[str] = field(default_factory=list)
    states: List[str] = field(default_factory=list)
    cities: List[str] = field(default_factory=list)
    buckets: List[str] = field(default_factory=list)
    criteria: List[Dict[str, Any]] = field(default_factory=list)
    agent_ids: List[int] = field(default_factory=list)
    percentages: List[float] = field(default_factory=list)
    max_cases_per_agent: Optional[int] = None
    priority: int = 0
    created_by: Optional[str] = None

    _enum_fields = {
        'rule_type': RuleType,
        'status': RuleStatus,
    }


@dataclass
class AllocationBatch(StorageRecord):
    """
    One uploaded file and its processing progress.

    ``processed_rows`` is the checkpoint: every data row numbered at or
    below it has been applied or recorded as an error.
    """
    batch_type: BatchType
    file_name: str
    status: BatchStatus = BatchStatus.UPLOADED
    total_cases: int = 0
    successful_allocations: int = 0
    failed_allocations: int = 0
    processed_rows: int = 0
    uploaded_by: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    file_path: Optional[str] = None

    _enum_fields = {
        'batch_type': BatchType,
        'status': BatchStatus,
    }
    _datetime_fields = ('uploaded_at', 'completed_at')

    @property
    def batch_id(self) -> str:
        return self.id


@dataclass
class BatchError(StorageRecord):
    """Write-once failure of one upload row (row 0 for whole-file failures)"""
    batch_id: str
    module: ErrorModule
    row_number: int
    error_type: ErrorType
    error_message: str
    case_id: Optional[int] = None
    external_case_id: Optional[str] = None
    field_name: Optional[str] = None
    original_row_data: Dict[str, str] = field(default_factory=dict)

    _enum_fields = {
        'module': ErrorModule,
        'error_type': ErrorType,
    }

    @property
    def error_id(self) -> str:
        return self.id


@dataclass
class AllocationJob(StorageRecord):
    """Background reallocation job and its reconciled outcome"""
    job_type: JobType
    status: JobStatus = JobStatus.QUEUED
    estimated_cases: int = 0
    processed_cases: int = 0
    successful: int = 0
    failed: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    parameters: Dict[str, Any] = field(default_factory=dict)
    requested_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    _enum_fields = {
        'job_type': JobType,
        'status': JobStatus,
    }
    _datetime_fields = ('started_at', 'completed_at')

    @property
    def job_id(self) -> str:
        return self.id


@dataclass
class AgentWorkload:
    """Derived view of one agent's load"""
    agent_id: int
    agent_name: str
    geography: Optional[str]
    capacity: int
    active_allocations: int
    available_capacity: int
    utilization_percentage: float
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'agent_id': self.agent_id,
            'agent_name': self.agent_name,
            'geography': self.geography,
            'capacity': self.capacity,
            'active_allocations': self.active_allocations,
            'available_capacity': self.available_capacity,
            'utilization_percentage': self.utilization_percentage,
            'active': self.active,
        }


def percentage(part: int, whole: int) -> float:
    """part / whole as a percentage, rounded half-up to two places (0.0 for an empty whole)"""
    if not whole:
        return 0.0
    value = Decimal(part) * Decimal(100) / Decimal(whole)
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

"""
Allocation Store Module

Data access for allocation rows, the per-case ownership pointer, history,
upload batches, batch errors, agent load counters and background jobs.

The ownership pointer table holds one row per case naming the agent that
currently owns it. Changes go through a compare-and-swap on that row, so
two writers racing to reallocate the same case cannot both succeed.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from .storage import StorageInterface
from .models import (
    CaseAllocation, AllocationHistory, AllocationBatch, BatchError, AllocationJob,
    AllocationStatus, BatchType, BatchStatus
)
from .exceptions import DataIntegrityError, NotFoundError


logger = logging.getLogger(__name__)


class AllocationStore:
    """Storage access for allocation state"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.allocations_table = "case_allocations"
        self.owners_table = "case_owners"
        self.history_table = "allocation_history"
        self.batches_table = "allocation_batches"
        self.errors_table = "batch_errors"
        self.loads_table = "agent_loads"
        self.jobs_table = "allocation_jobs"

    # Allocation rows

    def save_allocation(self, allocation: CaseAllocation) -> None:
        self.storage.save(self.allocations_table, allocation.id, allocation.to_dict())

    def get_allocation(self, allocation_id: str) -> Optional[CaseAllocation]:
        data = self.storage.load(self.allocations_table, allocation_id)
        if data:
            return CaseAllocation.from_dict(data)
        return None

    def get_active_allocation(self, case_id: int) -> Optional[CaseAllocation]:
        """The ALLOCATED row for a case, found through the ownership pointer"""
        owner = self.storage.load(self.owners_table, str(case_id))
        if not owner or owner.get('allocation_id') is None:
            return None
        allocation = self.get_allocation(owner['allocation_id'])
        if allocation is None or not allocation.is_active:
            raise DataIntegrityError(
                f"Ownership pointer for case {case_id} references a non-active allocation",
                field_name="case_id"
            )
        return allocation

    def current_owner(self, case_id: int) -> Optional[int]:
        owner = self.storage.load(self.owners_table, str(case_id))
        return owner.get('agent_id') if owner else None

    def swap_owner(self, case_id: int, expected_agent_id: Optional[int],
                   allocation: Optional[CaseAllocation]) -> bool:
        """
        Point the case at a new allocation (or at nobody) if it is still
        owned by ``expected_agent_id``. Returns False when another writer
        got there first.
        """
        record = {
            'case_id': case_id,
            'agent_id': allocation.primary_agent_id if allocation else None,
            'allocation_id': allocation.id if allocation else None,
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }
        return self.storage.compare_and_swap(
            self.owners_table, str(case_id), 'agent_id', expected_agent_id, record
        )

    def allocations_for_case(self, case_id: int) -> List[CaseAllocation]:
        rows = self.storage.find(self.allocations_table, {'case_id': case_id})
        return sorted((CaseAllocation.from_dict(r) for r in rows), key=lambda a: a.allocated_at)

    def active_allocations(self, agent_id: Optional[int] = None,
                           geography: Optional[str] = None) -> List[CaseAllocation]:
        """ALLOCATED rows, optionally for one primary agent or geography"""
        filters: Dict[str, Any] = {'status': AllocationStatus.ALLOCATED.value}
        if agent_id is not None:
            filters['primary_agent_id'] = agent_id
        rows = [CaseAllocation.from_dict(r) for r in self.storage.find(self.allocations_table, filters)]
        if geography:
            rows = [a for a in rows if (a.geography_code or "").lower() == geography.lower()]
        return sorted(rows, key=lambda a: a.case_id)

    def allocations_for_batch(self, batch_id: str) -> List[CaseAllocation]:
        rows = self.storage.find(self.allocations_table, {'batch_id': batch_id})
        return sorted((CaseAllocation.from_dict(r) for r in rows), key=lambda a: a.allocated_at)

    def count_active_by_agent(self) -> Dict[int, int]:
        """Active primary allocations per agent, derived from allocation rows"""
        counts: Dict[int, int] = {}
        for allocation in self.active_allocations():
            counts[allocation.primary_agent_id] = counts.get(allocation.primary_agent_id, 0) + 1
        return counts

    # Ownership history

    def append_history(self, entry: AllocationHistory) -> None:
        """Insert a history row; existing rows are never overwritten"""
        if self.storage.exists(self.history_table, entry.id):
            raise DataIntegrityError(f"History entry {entry.id} already exists")
        self.storage.save(self.history_table, entry.id, entry.to_dict())

    def history_for_case(self, case_id: int) -> List[AllocationHistory]:
        rows = self.storage.find(self.history_table, {'case_id': case_id})
        return [AllocationHistory.from_dict(r) for r in rows]

    def all_history(self) -> List[AllocationHistory]:
        return [AllocationHistory.from_dict(r) for r in self.storage.load_all(self.history_table)]

    # Agent load counters

    def agent_load(self, agent_id: int) -> int:
        record = self.storage.load(self.loads_table, str(agent_id))
        return record['active'] if record else 0

    def adjust_agent_load(self, agent_id: int, delta: int) -> int:
        """Change an agent's active-case counter; call inside the allocation transaction"""
        current = self.agent_load(agent_id)
        updated = current + delta
        if updated < 0:
            raise DataIntegrityError(f"Load counter for agent {agent_id} would become negative")
        self.storage.save(self.loads_table, str(agent_id), {'agent_id': agent_id, 'active': updated})
        return updated

    def all_agent_loads(self) -> Dict[int, int]:
        return {r['agent_id']: r['active'] for r in self.storage.load_all(self.loads_table)}

    # Batches

    def save_batch(self, batch: AllocationBatch) -> None:
        batch.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.batches_table, batch.id, batch.to_dict())

    def get_batch(self, batch_id: str) -> Optional[AllocationBatch]:
        data = self.storage.load(self.batches_table, batch_id)
        if data:
            return AllocationBatch.from_dict(data)
        return None

    def require_batch(self, batch_id: str) -> AllocationBatch:
        batch = self.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found", field_name="batch_id")
        return batch

    def list_batches(
        self,
        batch_type: Optional[BatchType] = None,
        status: Optional[BatchStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[AllocationBatch]:
        """Batches newest first, filtered by type, status and upload time"""
        filters: Dict[str, Any] = {}
        if batch_type:
            filters['batch_type'] = batch_type.value
        if status:
            filters['status'] = status.value
        batches = [AllocationBatch.from_dict(r) for r in self.storage.find(self.batches_table, filters)]
        if start:
            batches = [b for b in batches if b.uploaded_at and b.uploaded_at >= start]
        if end:
            batches = [b for b in batches if b.uploaded_at and b.uploaded_at <= end]
        return sorted(batches, key=lambda b: b.uploaded_at or b.created_at, reverse=True)

    # Batch errors

    def add_error(self, error: BatchError) -> None:
        """Insert a batch error; errors are write-once"""
        if self.storage.exists(self.errors_table, error.id):
            raise DataIntegrityError(f"Batch error {error.id} already exists")
        self.storage.save(self.errors_table, error.id, error.to_dict())

    def get_error(self, error_id: str) -> Optional[BatchError]:
        data = self.storage.load(self.errors_table, error_id)
        if data:
            return BatchError.from_dict(data)
        return None

    def errors_for_batch(self, batch_id: str) -> List[BatchError]:
        rows = self.storage.find(self.errors_table, {'batch_id': batch_id})
        return sorted((BatchError.from_dict(r) for r in rows), key=lambda e: (e.row_number, e.created_at))

    def list_errors(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        error_type: Optional[str] = None,
        module: Optional[str] = None
    ) -> List[BatchError]:
        filters: Dict[str, Any] = {}
        if error_type:
            filters['error_type'] = error_type
        if module:
            filters['module'] = module
        errors = [BatchError.from_dict(r) for r in self.storage.find(self.errors_table, filters)]
        if start:
            errors = [e for e in errors if e.created_at >= start]
        if end:
            errors = [e for e in errors if e.created_at <= end]
        return sorted(errors, key=lambda e: e.created_at)

    # Jobs

    def save_job(self, job: AllocationJob) -> None:
        job.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.jobs_table, job.id, job.to_dict())

    def get_job(self, job_id: str) -> Optional[AllocationJob]:
        data = self.storage.load(self.jobs_table, job_id)
        if data:
            return AllocationJob.from_dict(data)
        return None

    def require_job(self, job_id: str) -> AllocationJob:
        job = self.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found", field_name="job_id")
        return job

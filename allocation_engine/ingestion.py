"""
Batch Ingestion Module

Processes uploaded CSV files of allocation, reallocation and contact-update
instructions. An upload is staged on disk and acknowledged straight away;
a background worker then walks the batch through

    UPLOADED -> PARSING -> VALIDATING -> APPLYING -> COMPLETED | COMPLETED_WITH_ERRORS | FAILED

The staged file is first streamed once to check its structure; a bad
header or an unparseable record fails the batch before anything is
applied. Rows are then read again in chunks. Each row is validated by a
pure function that returns a RowResult, then applied in its own
transaction together with the batch checkpoint, so a restarted worker
continues after the last row it finished.
"""

import csv
import io
import re
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .storage import StorageInterface
from .models import (
    AllocationBatch, BatchError, BatchStatus, BatchType, ErrorType, ErrorModule, AllocationType
)
from .directory import AgentDirectory, CaseDirectory, Case, Agent, CONTACT_FIELDS
from .store import AllocationStore
from .allocation import AllocationOrchestrator
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventOutbox, OutboxRelay
from .jobs import JobRunner
from .config import AllocationConfig, get_config
from .exceptions import AllocationError, BusinessRuleError, ValidationError
from .logging_config import get_logger, log_action
from . import csv_export


ALLOCATION_HEADERS = (
    'case_id', 'external_case_id', 'loan_account_number', 'customer_name',
    'primary_agent_id', 'secondary_agent_id', 'allocation_type', 'allocation_percentage',
    'geography', 'bucket', 'priority', 'remarks',
)
REALLOCATION_HEADERS = (
    'case_id', 'external_case_id', 'loan_account_number', 'current_agent_id',
    'new_agent_id', 'reallocation_reason', 'reallocation_type', 'effective_date',
    'priority', 'remarks',
)
CONTACT_HEADERS = (
    'case_id', 'external_case_id', 'loan_account_number', 'customer_name',
    'mobile_number', 'alternate_mobile', 'email', 'alternate_email', 'address',
    'city', 'state', 'pincode', 'update_type', 'remarks',
)

MOBILE_PATTERN = re.compile(r'^[0-9]{10}$')
EMAIL_PATTERN = re.compile(r'^[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,6}$', re.IGNORECASE)
PINCODE_PATTERN = re.compile(r'^[0-9]{6}$')


@dataclass
class RowError:
    error_type: ErrorType
    message: str
    field_name: Optional[str] = None


@dataclass
class AllocationCommand:
    case_id: int
    primary_agent_id: int
    secondary_agent_id: Optional[int] = None
    allocation_type: AllocationType = AllocationType.PRIMARY
    workload_percentage: Optional[float] = None
    remarks: Optional[str] = None


@dataclass
class ReallocationCommand:
    case_id: int
    current_agent_id: int
    new_agent_id: int
    reason: Optional[str] = None
    effective_date: Optional[date] = None


@dataclass
class ContactUpdateCommand:
    case_id: int
    update_type: str
    changes: Dict[str, str]


@dataclass
class RowResult:
    """Outcome of validating one row: a command to apply, or an error"""
    row_number: int
    row: Dict[str, str]
    case_id: Optional[int] = None
    command: Any = None
    error: Optional[RowError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RowContext:
    """Read-only lookups available to row validation"""

    def __init__(self, agents: AgentDirectory, cases: CaseDirectory, store: AllocationStore):
        self.agents = agents
        self.cases = cases
        self.store = store

    def get_case(self, case_id: int) -> Optional[Case]:
        return self.cases.get_case(case_id)

    def get_agent(self, agent_id: int) -> Optional[Agent]:
        return self.agents.get_agent(agent_id)

    def current_owner(self, case_id: int) -> Optional[int]:
        return self.store.current_owner(case_id)

    def agent_load(self, agent_id: int) -> int:
        return self.store.agent_load(agent_id)


def _parse_int(row: Dict[str, str], name: str, required: bool) -> Tuple[Optional[int], Optional[str]]:
    raw = (row.get(name) or "").strip()
    if not raw:
        return None, (f"{name} is required" if required else None)
    try:
        return int(raw), None
    except ValueError:
        return None, f"Invalid {name}: '{raw}' is not a whole number"


def _row_case_id(row: Dict[str, str]) -> Optional[int]:
    case_id, _ = _parse_int(row, 'case_id', required=True)
    return case_id


def _check_case_id(row_number: int, row: Dict[str, str], seen: Dict[int, int]) -> Tuple[Optional[int], Optional[RowResult]]:
    case_id, problem = _parse_int(row, 'case_id', required=True)
    if problem:
        return None, RowResult(row_number, row, error=RowError(ErrorType.VALIDATION, problem, 'case_id'))
    if case_id in seen:
        return case_id, RowResult(row_number, row, case_id=case_id, error=RowError(
            ErrorType.DATA_INTEGRITY,
            f"Duplicate case_id {case_id} in file (first seen at row {seen[case_id]})",
            'case_id'
        ))
    return case_id, None


def _check_agent(row_number: int, row: Dict[str, str], case_id: int, agent_id: int,
                 field_name: str, context: RowContext) -> Optional[RowResult]:
    agent = context.get_agent(agent_id)
    if agent is None:
        return RowResult(row_number, row, case_id=case_id, error=RowError(
            ErrorType.DATA_INTEGRITY, f"Agent {agent_id} not found", field_name))
    if not agent.active:
        return RowResult(row_number, row, case_id=case_id, error=RowError(
            ErrorType.BUSINESS_RULE, f"Agent {agent_id} is inactive", field_name))
    return None


def validate_allocation_row(row_number: int, row: Dict[str, str], context: RowContext,
                            seen: Dict[int, int]) -> RowResult:
    """Validate one allocation upload row"""
    case_id, failure = _check_case_id(row_number, row, seen)
    if failure:
        return failure

    def fail(error_type: ErrorType, message: str, field_name: str) -> RowResult:
        return RowResult(row_number, row, case_id=case_id, error=RowError(error_type, message, field_name))

    agent_id, problem = _parse_int(row, 'primary_agent_id', required=True)
    if problem:
        return fail(ErrorType.VALIDATION, problem, 'primary_agent_id')
    secondary_id, problem = _parse_int(row, 'secondary_agent_id', required=False)
    if problem:
        return fail(ErrorType.VALIDATION, problem, 'secondary_agent_id')
    if secondary_id is not None and secondary_id == agent_id:
        return fail(ErrorType.VALIDATION, "secondary_agent_id must differ from primary_agent_id", 'secondary_agent_id')

    raw_type = (row.get('allocation_type') or "").strip().upper()
    if raw_type:
        try:
            allocation_type = AllocationType(raw_type)
        except ValueError:
            return fail(ErrorType.VALIDATION, f"Invalid allocation_type: '{raw_type}'", 'allocation_type')
    else:
        allocation_type = AllocationType.SPLIT if secondary_id is not None else AllocationType.PRIMARY

    workload = None
    raw_percentage = (row.get('allocation_percentage') or "").strip()
    if raw_percentage:
        try:
            value = Decimal(raw_percentage)
        except InvalidOperation:
            return fail(ErrorType.VALIDATION, f"Invalid allocation_percentage: '{raw_percentage}'", 'allocation_percentage')
        if not Decimal(0) < value <= Decimal(100):
            return fail(ErrorType.VALIDATION, "allocation_percentage must be between 0 and 100", 'allocation_percentage')
        workload = float(value)

    if context.get_case(case_id) is None:
        return fail(ErrorType.DATA_INTEGRITY, f"Case {case_id} not found", 'case_id')
    failure = _check_agent(row_number, row, case_id, agent_id, 'primary_agent_id', context)
    if failure:
        return failure
    if secondary_id is not None and context.get_agent(secondary_id) is None:
        return fail(ErrorType.DATA_INTEGRITY, f"Agent {secondary_id} not found", 'secondary_agent_id')
    if context.current_owner(case_id) == agent_id:
        return fail(ErrorType.BUSINESS_RULE, f"Case {case_id} is already allocated to agent {agent_id}", 'primary_agent_id')
    if context.agent_load(agent_id) >= context.get_agent(agent_id).capacity:
        return fail(ErrorType.BUSINESS_RULE, f"Agent {agent_id} has no available capacity", 'primary_agent_id')

    return RowResult(row_number, row, case_id=case_id, command=AllocationCommand(
        case_id=case_id,
        primary_agent_id=agent_id,
        secondary_agent_id=secondary_id,
        allocation_type=allocation_type,
        workload_percentage=workload,
        remarks=(row.get('remarks') or "").strip() or None
    ))


def validate_reallocation_row(row_number: int, row: Dict[str, str], context: RowContext,
                              seen: Dict[int, int]) -> RowResult:
    """Validate one reallocation upload row"""
    case_id, failure = _check_case_id(row_number, row, seen)
    if failure:
        return failure

    def fail(error_type: ErrorType, message: str, field_name: str) -> RowResult:
        return RowResult(row_number, row, case_id=case_id, error=RowError(error_type, message, field_name))

    current_id, problem = _parse_int(row, 'current_agent_id', required=True)
    if problem:
        return fail(ErrorType.VALIDATION, problem, 'current_agent_id')
    new_id, problem = _parse_int(row, 'new_agent_id', required=True)
    if problem:
        return fail(ErrorType.VALIDATION, problem, 'new_agent_id')
    if current_id == new_id:
        return fail(ErrorType.VALIDATION, "new_agent_id must differ from current_agent_id", 'new_agent_id')

    effective = None
    raw_date = (row.get('effective_date') or "").strip()
    if raw_date:
        try:
            effective = date.fromisoformat(raw_date)
        except ValueError:
            return fail(ErrorType.VALIDATION, f"Invalid effective_date: '{raw_date}' (expected YYYY-MM-DD)", 'effective_date')

    if context.get_case(case_id) is None:
        return fail(ErrorType.DATA_INTEGRITY, f"Case {case_id} not found", 'case_id')
    if context.get_agent(current_id) is None:
        return fail(ErrorType.DATA_INTEGRITY, f"Agent {current_id} not found", 'current_agent_id')
    failure = _check_agent(row_number, row, case_id, new_id, 'new_agent_id', context)
    if failure:
        return failure
    owner = context.current_owner(case_id)
    if owner != current_id:
        return fail(
            ErrorType.BUSINESS_RULE,
            f"Case {case_id} is not allocated to agent {current_id} (current owner: {owner})",
            'current_agent_id'
        )
    if context.agent_load(new_id) >= context.get_agent(new_id).capacity:
        return fail(ErrorType.BUSINESS_RULE, f"Agent {new_id} has no available capacity", 'new_agent_id')

    return RowResult(row_number, row, case_id=case_id, command=ReallocationCommand(
        case_id=case_id,
        current_agent_id=current_id,
        new_agent_id=new_id,
        reason=(row.get('reallocation_reason') or "").strip() or None,
        effective_date=effective
    ))


def validate_contact_row(row_number: int, row: Dict[str, str], context: RowContext,
                         seen: Dict[int, int]) -> RowResult:
    """Validate one contact-update upload row"""
    case_id, failure = _check_case_id(row_number, row, seen)
    if failure:
        return failure

    def fail(error_type: ErrorType, message: str, field_name: str) -> RowResult:
        return RowResult(row_number, row, case_id=case_id, error=RowError(error_type, message, field_name))

    update_type = (row.get('update_type') or "").strip().upper()
    if not update_type:
        return fail(ErrorType.VALIDATION, "update_type is required", 'update_type')
    if update_type not in CONTACT_FIELDS:
        return fail(
            ErrorType.VALIDATION,
            f"Invalid update_type: '{update_type}' (expected one of {', '.join(CONTACT_FIELDS)})",
            'update_type'
        )

    values = {name: (row.get(name) or "").strip() for name in CONTACT_FIELDS[update_type]}
    for name in ('mobile_number', 'alternate_mobile'):
        if values.get(name) and not MOBILE_PATTERN.match(values[name]):
            return fail(ErrorType.VALIDATION, f"Invalid {name}: must be exactly 10 digits", name)
    for name in ('email', 'alternate_email'):
        if values.get(name) and not EMAIL_PATTERN.match(values[name]):
            return fail(ErrorType.VALIDATION, f"Invalid {name}: '{values[name]}'", name)
    if values.get('pincode') and not PINCODE_PATTERN.match(values['pincode']):
        return fail(ErrorType.VALIDATION, "Invalid pincode: must be exactly 6 digits", 'pincode')

    changes = {name: value for name, value in values.items() if value}
    if not changes:
        first_field = CONTACT_FIELDS[update_type][0]
        return fail(
            ErrorType.VALIDATION,
            f"{update_type} needs at least one of: {', '.join(CONTACT_FIELDS[update_type])}",
            first_field
        )

    if context.get_case(case_id) is None:
        return fail(ErrorType.DATA_INTEGRITY, f"Case {case_id} not found", 'case_id')

    return RowResult(row_number, row, case_id=case_id, command=ContactUpdateCommand(
        case_id=case_id, update_type=update_type, changes=changes
    ))


@dataclass(frozen=True)
class BatchFormat:
    """Everything that differs between the three upload kinds"""
    batch_type: BatchType
    module: ErrorModule
    id_prefix: str
    headers: Tuple[str, ...]
    required: Tuple[str, ...]
    validate: Callable[[int, Dict[str, str], RowContext, Dict[int, int]], RowResult]


FORMATS = {
    BatchType.ALLOCATION: BatchFormat(
        BatchType.ALLOCATION, ErrorModule.ALLOCATION, "ALLOC_BATCH_",
        ALLOCATION_HEADERS, ('case_id', 'primary_agent_id'), validate_allocation_row
    ),
    BatchType.REALLOCATION: BatchFormat(
        BatchType.REALLOCATION, ErrorModule.REALLOCATION, "REALLOC_BATCH_",
        REALLOCATION_HEADERS, ('case_id', 'current_agent_id', 'new_agent_id'), validate_reallocation_row
    ),
    BatchType.CONTACT_UPDATE: BatchFormat(
        BatchType.CONTACT_UPDATE, ErrorModule.CONTACT_UPDATE, "CONTACT_BATCH_",
        CONTACT_HEADERS, ('case_id', 'update_type'), validate_contact_row
    ),
}


def _row_dict(columns: List[str], values: List[str]) -> Dict[str, str]:
    row: Dict[str, str] = {}
    for index, column in enumerate(columns):
        if column and column not in row:
            row[column] = values[index].strip() if index < len(values) else ""
    return row


def _is_blank(values: List[str]) -> bool:
    return not any(v.strip() for v in values)


class BatchIngestionPipeline:
    """Upload staging, background processing and exports of upload batches"""

    def __init__(
        self,
        storage: StorageInterface,
        store: AllocationStore,
        orchestrator: AllocationOrchestrator,
        agents: AgentDirectory,
        cases: CaseDirectory,
        audit_trail: AuditTrail,
        outbox: EventOutbox,
        relay: OutboxRelay,
        jobs: JobRunner,
        config: Optional[AllocationConfig] = None
    ):
        self.storage = storage
        self.store = store
        self.orchestrator = orchestrator
        self.agents = agents
        self.cases = cases
        self.audit_trail = audit_trail
        self.outbox = outbox
        self.relay = relay
        self.jobs = jobs
        self.config = config or get_config()
        self.staging_dir = Path(self.config.staging_dir)
        self.logger = get_logger("allocation_engine.ingestion")

        self._appliers = {
            BatchType.ALLOCATION: self._apply_allocation,
            BatchType.REALLOCATION: self._apply_reallocation,
            BatchType.CONTACT_UPDATE: self._apply_contact_update,
        }

    # Upload

    def upload(self, batch_type: BatchType, content: bytes, file_name: str,
               uploaded_by: str = "system") -> AllocationBatch:
        """
        Stage an uploaded file and schedule it for processing.

        Returns the new batch in UPLOADED status; the caller polls the batch
        for progress.
        """
        if not content:
            raise ValidationError("Uploaded file is empty", field_name="file")
        if len(content) > self.config.api_max_upload_size:
            raise ValidationError(
                f"Uploaded file exceeds {self.config.api_max_upload_size} bytes", field_name="file"
            )
        if file_name and not file_name.lower().endswith('.csv'):
            raise ValidationError(f"Only CSV files are accepted, got '{file_name}'", field_name="file")

        fmt = FORMATS[batch_type]
        batch_id = f"{fmt.id_prefix}{uuid.uuid4().hex[:12].upper()}"

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.staging_dir / f"{batch_id}.csv"
        file_path.write_bytes(content)

        now = datetime.now(timezone.utc)
        batch = AllocationBatch(
            id=batch_id,
            created_at=now,
            updated_at=now,
            batch_type=batch_type,
            file_name=file_name or f"{batch_id}.csv",
            total_cases=self._count_rows(content),
            uploaded_by=uploaded_by,
            uploaded_at=now,
            file_path=str(file_path)
        )
        with self.storage.atomic():
            self.store.save_batch(batch)
            self.audit_trail.log_event(
                AuditEventType.BATCH_UPLOADED, "batch", batch_id,
                metadata={'batch_type': batch_type.value, 'file_name': batch.file_name,
                          'total_cases': batch.total_cases},
                user_id=uploaded_by
            )

        log_action(self.logger, "info", f"Batch {batch_id} uploaded with {batch.total_cases} rows",
                   user_id=uploaded_by, action="upload_batch", batch_id=batch_id,
                   extra={'batch_type': batch_type.value, 'file_name': batch.file_name})

        self.jobs.submit(batch_id, self.process_batch, batch_id)
        return batch

    def upload_allocation_file(self, content: bytes, file_name: str, uploaded_by: str = "system") -> AllocationBatch:
        return self.upload(BatchType.ALLOCATION, content, file_name, uploaded_by)

    def upload_reallocation_file(self, content: bytes, file_name: str, uploaded_by: str = "system") -> AllocationBatch:
        return self.upload(BatchType.REALLOCATION, content, file_name, uploaded_by)

    def upload_contact_file(self, content: bytes, file_name: str, uploaded_by: str = "system") -> AllocationBatch:
        return self.upload(BatchType.CONTACT_UPDATE, content, file_name, uploaded_by)

    @staticmethod
    def _count_rows(content: bytes) -> int:
        try:
            reader = csv.reader(io.StringIO(content.decode('utf-8-sig')))
            next(reader, None)
            return sum(1 for values in reader if not _is_blank(values))
        except (UnicodeDecodeError, csv.Error):
            return 0

    # Processing

    def process_batch(self, batch_id: str) -> AllocationBatch:
        """Run (or resume) a staged batch to a terminal status"""
        batch = self.store.require_batch(batch_id)
        if batch.status.is_terminal:
            return batch

        try:
            self._process(batch)
        except Exception as e:
            self.logger.exception(f"Batch {batch_id} processing failed")
            self._fail_batch(self.store.require_batch(batch_id), ErrorType.SYSTEM,
                             f"Batch processing failed: {e}")
        return self.store.require_batch(batch_id)

    def _process(self, batch: AllocationBatch) -> None:
        fmt = FORMATS[batch.batch_type]
        self._advance(batch, BatchStatus.PARSING)

        columns = self._check_structure(batch, fmt)
        if columns is None:
            return

        seen: Dict[int, int] = {}
        total = 0
        chunk: List[Tuple[int, Dict[str, str]]] = []
        with self._open_staged(batch) as handle:
            reader = csv.reader(handle)
            next(reader, None)
            for row_number, values in enumerate(reader, start=1):
                if _is_blank(values):
                    continue
                total += 1
                chunk.append((row_number, _row_dict(columns, values)))
                if len(chunk) >= self.config.batch_chunk_size:
                    self._handle_chunk(batch, fmt, chunk, seen)
                    chunk = []
        if chunk:
            self._handle_chunk(batch, fmt, chunk, seen)

        self._complete_batch(batch, total)

    @staticmethod
    def _open_staged(batch: AllocationBatch):
        return open(batch.file_path, newline='', encoding='utf-8-sig')

    def _check_structure(self, batch: AllocationBatch, fmt: BatchFormat) -> Optional[List[str]]:
        """
        Read the whole staged file once without applying anything.

        Returns the normalized header columns, or None after failing the
        batch when the file is undecodable, malformed or missing a required
        column.
        """
        line_num = 0
        try:
            with self._open_staged(batch) as handle:
                reader = csv.reader(handle)
                header = next(reader, None)
                if header is None:
                    self._fail_batch(batch, ErrorType.VALIDATION, "File has no header row")
                    return None
                columns = [h.strip().lower() for h in header]
                missing = [name for name in fmt.required if name not in columns]
                if missing:
                    self._fail_batch(batch, ErrorType.VALIDATION,
                                     f"Missing required columns: {', '.join(missing)}", field_name=missing[0])
                    return None
                for _ in reader:
                    line_num = reader.line_num
        except UnicodeDecodeError:
            self._fail_batch(batch, ErrorType.VALIDATION, "File is not valid UTF-8 text")
            return None
        except csv.Error as e:
            self._fail_batch(batch, ErrorType.VALIDATION, f"Malformed CSV near line {line_num + 1}: {e}")
            return None
        return columns

    def _handle_chunk(self, batch: AllocationBatch, fmt: BatchFormat,
                      chunk: List[Tuple[int, Dict[str, str]]], seen: Dict[int, int]) -> None:
        self._advance(batch, BatchStatus.VALIDATING)
        context = RowContext(self.agents, self.cases, self.store)

        results: List[RowResult] = []
        for row_number, row in chunk:
            if row_number <= batch.processed_rows:
                # Finished before a restart; only its case id still matters
                case_id = _row_case_id(row)
                if case_id is not None:
                    seen.setdefault(case_id, row_number)
                continue
            result = fmt.validate(row_number, row, context, seen)
            if result.case_id is not None:
                seen.setdefault(result.case_id, row_number)
            results.append(result)

        if not results:
            return

        self._advance(batch, BatchStatus.APPLYING)
        for result in results:
            if result.error:
                self._record_failure(batch, fmt, result.row_number, result.row, result.case_id,
                                     result.error.error_type, result.error.message, result.error.field_name)
                continue
            try:
                with self.storage.atomic():
                    self._appliers[batch.batch_type](batch, result.command)
                    updated = replace(
                        batch,
                        successful_allocations=batch.successful_allocations + 1,
                        processed_rows=result.row_number
                    )
                    self.store.save_batch(updated)
                batch.successful_allocations = updated.successful_allocations
                batch.processed_rows = updated.processed_rows
            except AllocationError as e:
                self._record_failure(batch, fmt, result.row_number, result.row, result.case_id,
                                     ErrorType(e.error_type), e.message, e.field_name)
            except Exception as e:
                self.logger.exception(f"Unexpected error applying row {result.row_number} of batch {batch.id}")
                self._record_failure(batch, fmt, result.row_number, result.row, result.case_id,
                                     ErrorType.PROCESSING, f"Unexpected error: {e}", None)

        self.relay.relay_pending()

    def _apply_allocation(self, batch: AllocationBatch, command: AllocationCommand) -> None:
        self.orchestrator.allocate(
            command.case_id,
            command.primary_agent_id,
            allocated_by=batch.uploaded_by or "system",
            reason=command.remarks,
            batch_id=batch.id,
            secondary_agent_id=command.secondary_agent_id,
            allocation_type=command.allocation_type,
            workload_percentage=command.workload_percentage
        )

    def _apply_reallocation(self, batch: AllocationBatch, command: ReallocationCommand) -> None:
        self.orchestrator.allocate(
            command.case_id,
            command.new_agent_id,
            allocated_by=batch.uploaded_by or "system",
            reason=command.reason,
            batch_id=batch.id,
            expected_agent_id=command.current_agent_id
        )

    def _apply_contact_update(self, batch: AllocationBatch, command: ContactUpdateCommand) -> None:
        change = self.cases.update_contact(command.case_id, command.changes)
        event_data = {'case_id': command.case_id, 'update_type': command.update_type,
                      'fields': sorted(command.changes), 'batch_id': batch.id}
        self.audit_trail.log_event(
            AuditEventType.CONTACT_UPDATED, "case", command.case_id, metadata=event_data,
            user_id=batch.uploaded_by, before=change['before'], after=change['after']
        )
        self.outbox.enqueue(DomainEvent.CASE_CONTACT_UPDATED, "case", command.case_id, event_data)

    def _record_failure(self, batch: AllocationBatch, fmt: BatchFormat, row_number: int,
                        row: Dict[str, str], case_id: Optional[int], error_type: ErrorType,
                        message: str, field_name: Optional[str]) -> None:
        now = datetime.now(timezone.utc)
        error = BatchError(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            batch_id=batch.id,
            module=fmt.module,
            row_number=row_number,
            error_type=error_type,
            error_message=message,
            case_id=case_id,
            external_case_id=(row.get('external_case_id') or None),
            field_name=field_name,
            original_row_data=dict(row)
        )
        with self.storage.atomic():
            self.store.add_error(error)
            updated = replace(
                batch,
                failed_allocations=batch.failed_allocations + 1,
                processed_rows=max(batch.processed_rows, row_number)
            )
            self.store.save_batch(updated)
        batch.failed_allocations = updated.failed_allocations
        batch.processed_rows = updated.processed_rows

    # Status handling

    def _advance(self, batch: AllocationBatch, target: BatchStatus) -> None:
        """Move forward to ``target`` unless the batch is already there or past it"""
        if batch.status == target or not batch.status.can_transition_to(target):
            return
        batch.status = target
        self.store.save_batch(batch)

    def _finish(self, batch: AllocationBatch, target: BatchStatus) -> None:
        if not batch.status.can_transition_to(target):
            raise BusinessRuleError(
                f"Batch {batch.id} cannot move from {batch.status.value} to {target.value}",
                field_name="status"
            )
        batch.status = target
        batch.completed_at = datetime.now(timezone.utc)
        self.store.save_batch(batch)

    def _complete_batch(self, batch: AllocationBatch, total: int) -> None:
        batch.total_cases = total
        status = BatchStatus.COMPLETED_WITH_ERRORS if batch.failed_allocations else BatchStatus.COMPLETED
        summary = {
            'status': status.value,
            'batch_type': batch.batch_type.value,
            'total_cases': total,
            'successful': batch.successful_allocations,
            'failed': batch.failed_allocations,
        }
        with self.storage.atomic():
            self._finish(batch, status)
            self.audit_trail.log_event(AuditEventType.BATCH_COMPLETED, "batch", batch.id,
                                       metadata=summary, user_id=batch.uploaded_by)
            self.outbox.enqueue(DomainEvent.BATCH_COMPLETED, "batch", batch.id, summary)
        self.relay.relay_pending()

        log_action(self.logger, "info", f"Batch {batch.id} finished: {status.value}",
                   user_id=batch.uploaded_by, action="process_batch", batch_id=batch.id, extra=summary)

    def _fail_batch(self, batch: AllocationBatch, error_type: ErrorType, message: str,
                    field_name: Optional[str] = None) -> None:
        """Mark a batch FAILED with one whole-file error recorded at row 0"""
        if batch.status.is_terminal:
            return
        fmt = FORMATS[batch.batch_type]
        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            self.store.add_error(BatchError(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                batch_id=batch.id,
                module=fmt.module,
                row_number=0,
                error_type=error_type,
                error_message=message,
                field_name=field_name
            ))
            self._finish(batch, BatchStatus.FAILED)
            self.audit_trail.log_event(AuditEventType.BATCH_FAILED, "batch", batch.id,
                                       metadata={'reason': message}, user_id=batch.uploaded_by)
            self.outbox.enqueue(DomainEvent.BATCH_FAILED, "batch", batch.id, {'reason': message})
        self.relay.relay_pending()

        log_action(self.logger, "error", f"Batch {batch.id} failed: {message}",
                   user_id=batch.uploaded_by, action="process_batch", batch_id=batch.id)

    def recover_stalled_batches(self) -> Dict[str, List[str]]:
        """
        Pick up batches left unfinished by a previous process.

        Batches whose staged file is still present are resumed from their
        checkpoint; the rest are marked FAILED.
        """
        resumed: List[str] = []
        failed: List[str] = []
        for batch in self.store.list_batches():
            if batch.status.is_terminal or self.jobs.is_running(batch.id):
                continue
            if batch.file_path and Path(batch.file_path).exists():
                self.jobs.submit(batch.id, self.process_batch, batch.id)
                resumed.append(batch.id)
            else:
                self._fail_batch(batch, ErrorType.SYSTEM, "Staged upload file is missing; batch cannot be resumed")
                failed.append(batch.id)

        if resumed or failed:
            self.logger.info(f"Recovered stalled batches: {len(resumed)} resumed, {len(failed)} failed")
        return {'resumed': resumed, 'failed': failed}

    # Queries and exports

    def get_batch(self, batch_id: str, batch_type: Optional[BatchType] = None) -> AllocationBatch:
        batch = self.store.require_batch(batch_id)
        if batch_type is not None and batch.batch_type != batch_type:
            raise ValidationError(
                f"Batch {batch_id} is a {batch.batch_type.value} batch, not {batch_type.value}",
                field_name="batch_id"
            )
        return batch

    def get_batch_errors(self, batch_id: str) -> List[BatchError]:
        self.store.require_batch(batch_id)
        return self.store.errors_for_batch(batch_id)

    def list_batches(self, batch_type: Optional[BatchType] = None, status: Optional[BatchStatus] = None,
                     start: Optional[datetime] = None, end: Optional[datetime] = None,
                     page: int = 0, size: int = 20) -> Dict[str, Any]:
        if page < 0 or size <= 0:
            raise ValidationError("page must be >= 0 and size > 0", field_name="page")
        batches = self.store.list_batches(batch_type=batch_type, status=status, start=start, end=end)
        offset = page * size
        return {'items': batches[offset:offset + size], 'total': len(batches), 'page': page, 'size': size}

    def export_failed_rows(self, batch_id: str) -> str:
        """CSV of the failed rows, in the upload format plus STATUS and REMARKS"""
        batch = self.store.require_batch(batch_id)
        return csv_export.failed_rows_csv(FORMATS[batch.batch_type].headers, self.store.errors_for_batch(batch_id))

    def export_batch(self, batch_id: str) -> str:
        """CSV of every row of an allocation batch: successes first, then failures"""
        self.get_batch(batch_id, BatchType.ALLOCATION)
        allocations = self.store.allocations_for_batch(batch_id)
        return csv_export.allocation_batch_csv(
            ALLOCATION_HEADERS, allocations, self.store.errors_for_batch(batch_id), self.cases.get_case
        )

    @staticmethod
    def template(batch_type: BatchType, update_type: Optional[str] = None) -> str:
        """Empty upload file with example rows"""
        if batch_type == BatchType.CONTACT_UPDATE:
            if update_type is not None and update_type.upper() not in CONTACT_FIELDS:
                raise ValidationError(f"Invalid update_type: '{update_type}'", field_name="update_type")
            return csv_export.contact_template_csv(CONTACT_HEADERS, update_type.upper() if update_type else None)
        if batch_type == BatchType.REALLOCATION:
            return csv_export.template_csv(REALLOCATION_HEADERS, csv_export.REALLOCATION_TEMPLATE_ROWS)
        return csv_export.template_csv(ALLOCATION_HEADERS, csv_export.ALLOCATION_TEMPLATE_ROWS)

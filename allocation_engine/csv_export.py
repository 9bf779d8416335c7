"""
CSV templates and exports for upload batches.

Failed-row exports keep the upload column layout, so a corrected file can be
uploaded again as-is.
"""

import csv
import io
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .models import BatchError, CaseAllocation
from .directory import Case


STATUS_COLUMNS = ('STATUS', 'REMARKS')

ALLOCATION_TEMPLATE_ROWS = [
    ['1001', 'EXT-1001', 'LN0001001', 'Asha Rao', '501', '', 'PRIMARY', '', 'MH-PUNE', 'B1', 'HIGH', ''],
    ['1002', 'EXT-1002', 'LN0001002', 'Vikram Shah', '502', '503', 'SPLIT', '60', 'MH-PUNE', 'B2', 'MEDIUM', ''],
]
REALLOCATION_TEMPLATE_ROWS = [
    ['1001', 'EXT-1001', 'LN0001001', '501', '504', 'Agent on leave', 'TEMPORARY', '2024-01-15', 'HIGH', ''],
]
CONTACT_TEMPLATE_ROWS = {
    'MOBILE_UPDATE': ['1001', 'EXT-1001', 'LN0001001', 'Asha Rao', '9876543210', '9123456780', '', '', '', '', '', '', 'MOBILE_UPDATE', ''],
    'EMAIL_UPDATE': ['1001', 'EXT-1001', 'LN0001001', 'Asha Rao', '', '', 'asha.rao@example.com', '', '', '', '', '', 'EMAIL_UPDATE', ''],
    'ADDRESS_UPDATE': ['1001', 'EXT-1001', 'LN0001001', 'Asha Rao', '', '', '', '', '12 MG Road', 'Pune', 'Maharashtra', '411001', 'ADDRESS_UPDATE', ''],
}


def _write(header: Sequence[str], rows: Iterable[Sequence[object]]) -> str:
    output = io.StringIO()
    writer = csv.writer(output, lineterminator='\n')
    writer.writerow(header)
    for row in rows:
        writer.writerow(['' if value is None else value for value in row])
    return output.getvalue()


def template_csv(headers: Sequence[str], rows: List[List[str]]) -> str:
    """Header line plus example rows"""
    return _write(headers, rows)


def contact_template_csv(headers: Sequence[str], update_type: Optional[str] = None) -> str:
    if update_type is None:
        rows = list(CONTACT_TEMPLATE_ROWS.values())
    else:
        rows = [CONTACT_TEMPLATE_ROWS[update_type]]
    return _write(headers, rows)


def remark(error: BatchError) -> str:
    """Human readable description of one row failure"""
    if error.field_name:
        return f"Row {error.row_number}: {error.field_name}: {error.error_message}"
    return f"Row {error.row_number}: {error.error_message}"


def failed_rows_csv(headers: Sequence[str], errors: List[BatchError]) -> str:
    """
    Failed rows in the upload layout followed by STATUS and REMARKS.

    Whole-file errors (row 0) carry no row data and are exported with empty
    upload columns.
    """
    rows = []
    for error in sorted(errors, key=lambda e: e.row_number):
        data = error.original_row_data or {}
        rows.append([data.get(name, '') for name in headers] + ['FAILURE', remark(error)])
    return _write(list(headers) + list(STATUS_COLUMNS), rows)


def allocation_batch_csv(
    headers: Sequence[str],
    allocations: List[CaseAllocation],
    errors: List[BatchError],
    lookup_case: Callable[[int], Optional[Case]]
) -> str:
    """
    Every row of an allocation batch in the upload layout: applied
    allocations first (STATUS=SUCCESS), then failed rows (STATUS=FAILURE).
    """
    rows = []
    for allocation in sorted(allocations, key=lambda a: a.allocated_at):
        case = lookup_case(allocation.case_id)
        values = {
            'case_id': allocation.case_id,
            'external_case_id': allocation.external_case_id,
            'loan_account_number': case.loan_account_number if case else None,
            'customer_name': case.customer_name if case else None,
            'primary_agent_id': allocation.primary_agent_id,
            'secondary_agent_id': allocation.secondary_agent_id,
            'allocation_type': allocation.allocation_type.value,
            'allocation_percentage': allocation.workload_percentage,
            'geography': allocation.geography_code,
            'bucket': case.bucket if case else None,
            'priority': case.priority if case else None,
        }
        rows.append([values.get(name) for name in headers] + ['SUCCESS', ''])

    for error in sorted(errors, key=lambda e: e.row_number):
        data: Dict[str, str] = error.original_row_data or {}
        rows.append([data.get(name, '') for name in headers] + ['FAILURE', remark(error)])

    return _write(list(headers) + list(STATUS_COLUMNS), rows)

"""
Failure Analysis Module

Read-only aggregation over batch errors: what fails, where and how often.
Every method tolerates an empty error set and returns zeroed results.
"""

from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from .models import BatchError, ErrorType, ErrorModule, percentage
from .store import AllocationStore
from .config import AllocationConfig, get_config
from .exceptions import ValidationError
from .logging_config import get_logger


def _error_detail(error: BatchError) -> Dict[str, Any]:
    return {
        'error_id': error.error_id,
        'batch_id': error.batch_id,
        'case_id': error.case_id,
        'external_case_id': error.external_case_id,
        'row_number': error.row_number,
        'error_type': error.error_type.value,
        'error_message': error.error_message,
        'field_name': error.field_name,
        'created_at': error.created_at.isoformat(),
    }


def _type_counts(errors: List[BatchError]) -> Dict[str, int]:
    counts = Counter(e.error_type for e in errors)
    return {error_type.value: counts.get(error_type, 0) for error_type in ErrorType}


def _top_reasons(errors: List[BatchError], limit: int) -> List[Dict[str, Any]]:
    """Most frequent error messages; ties keep first-seen order"""
    counts = Counter(e.error_message for e in errors)
    first_type: Dict[str, ErrorType] = {}
    for error in errors:
        first_type.setdefault(error.error_message, error.error_type)
    return [
        {
            'error_message': message,
            'error_type': first_type[message].value,
            'count': count,
            'percentage': percentage(count, len(errors)),
        }
        for message, count in counts.most_common(limit)
    ]


def _field_failures(errors: List[BatchError], sample_size: int) -> List[Dict[str, Any]]:
    by_field: Dict[str, List[BatchError]] = {}
    for error in errors:
        if error.field_name:
            by_field.setdefault(error.field_name, []).append(error)

    result = []
    for field_name, field_errors in by_field.items():
        messages = Counter(e.error_message for e in field_errors)
        result.append({
            'field_name': field_name,
            'error_count': len(field_errors),
            'affected_batches': len({e.batch_id for e in field_errors}),
            'most_common_error': messages.most_common(1)[0][0],
            'common_errors': list(messages)[:sample_size],
        })
    return sorted(result, key=lambda f: f['error_count'], reverse=True)


class FailureAnalyzer:
    """Summaries of batch errors for operational visibility"""

    def __init__(self, store: AllocationStore, config: Optional[AllocationConfig] = None):
        self.store = store
        self.config = config or get_config()
        self.logger = get_logger("allocation_engine.failure_analysis")

    def _range(self, start_date: Optional[date], end_date: Optional[date]):
        end_date = end_date or datetime.now(timezone.utc).date()
        start_date = start_date or end_date - timedelta(days=self.config.summary_default_days)
        if start_date > end_date:
            raise ValidationError("start_date must not be after end_date", field_name="start_date")
        start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
        end = datetime.combine(end_date, time.max, tzinfo=timezone.utc)
        return start_date, end_date, start, end

    def _errors(self, batch_id: Optional[str]) -> List[BatchError]:
        if batch_id:
            return self.store.errors_for_batch(batch_id)
        return self.store.list_errors()

    def analyze_batch(self, batch_id: str) -> Dict[str, Any]:
        """Failure breakdown for one batch"""
        batch = self.store.require_batch(batch_id)
        errors = self.store.errors_for_batch(batch_id)
        self.logger.info(f"Analyzing {len(errors)} failures for batch {batch_id}")

        modules = [e.module.value for e in errors]
        recent = sorted(errors, key=lambda e: e.created_at, reverse=True)[:self.config.recent_errors_limit]
        return {
            'batch_id': batch_id,
            'batch_type': batch.batch_type.value,
            'status': batch.status.value,
            'module': modules[0] if modules else None,
            'analysis_timestamp': datetime.now(timezone.utc).isoformat(),
            'total_rows': batch.total_cases,
            'total_errors': len(errors),
            'error_rate': percentage(batch.failed_allocations, batch.total_cases),
            'unique_cases_affected': len({e.case_id for e in errors if e.case_id is not None}),
            'error_type_distribution': _type_counts(errors),
            'top_failure_reasons': _top_reasons(errors, self.config.top_failure_reasons_limit),
            'field_failures': _field_failures(errors, self.config.field_sample_messages),
            'recent_errors': [_error_detail(e) for e in recent],
        }

    def summary(self, start_date: Optional[date] = None, end_date: Optional[date] = None) -> Dict[str, Any]:
        """
        Failure summary over a date range (inclusive, UTC days).

        Defaults to the last ``summary_default_days`` days.
        """
        start_date, end_date, start, end = self._range(start_date, end_date)
        errors = self.store.list_errors(start=start, end=end)
        batches = self.store.list_batches(start=start, end=end)

        type_counts = _type_counts(errors)
        breakdown = [
            {'error_type': name, 'count': count, 'percentage': percentage(count, len(errors))}
            for name, count in type_counts.items()
        ]

        module_counts = Counter(e.module for e in errors)

        daily: Dict[date, List[BatchError]] = {}
        for error in errors:
            daily.setdefault(error.created_at.astimezone(timezone.utc).date(), []).append(error)
        trend = [
            {'date': day.isoformat(), 'error_count': len(day_errors),
             'batch_count': len({e.batch_id for e in day_errors})}
            for day, day_errors in sorted(daily.items())
        ]

        return {
            'start_date': start_date.isoformat(),
            'end_date': end_date.isoformat(),
            'total_errors': len(errors),
            'total_batches': len(batches),
            'batches_with_errors': len({e.batch_id for e in errors}),
            'error_type_breakdown': breakdown,
            'errors_by_module': {module.value: module_counts.get(module, 0) for module in ErrorModule},
            'daily_trend': trend,
            'top_failing_fields': _field_failures(errors, self.config.field_sample_messages)[:self.config.top_failure_reasons_limit],
        }

    def top_reasons(self, limit: Optional[int] = None, batch_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if limit is not None and limit <= 0:
            raise ValidationError("limit must be greater than zero", field_name="limit")
        return _top_reasons(self._errors(batch_id), limit or self.config.top_failure_reasons_limit)

    def by_error_type(self, batch_id: Optional[str] = None) -> Dict[str, int]:
        return _type_counts(self._errors(batch_id))

    def by_field(self, batch_id: Optional[str] = None) -> Dict[str, int]:
        counts = Counter(e.field_name for e in self._errors(batch_id) if e.field_name)
        return dict(counts.most_common())

"""
Tests for the audit trail, the event outbox and relay, background jobs
and structured logging
"""

import json
import logging
import threading

import pytest

from allocation_engine.storage import InMemoryStorage, SQLiteStorage
from allocation_engine.audit import AuditTrail, AuditEventType, changed_fields
from allocation_engine.events import DomainEvent, EventDispatcher, EventOutbox, OutboxRelay
from allocation_engine.jobs import JobRunner
from allocation_engine.logging_config import JSONFormatter, get_logger, log_action


class TestAuditTrail:
    """Hash-chained audit log"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_events_are_chained(self):
        first = self.audit_trail.log_event(AuditEventType.CASE_ALLOCATED, "case", 100, user_id="ops")
        second = self.audit_trail.log_event(AuditEventType.CASE_DEALLOCATED, "case", 100, user_id="ops")

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert self.audit_trail.verify_integrity()["valid"]
        assert self.audit_trail.count_events() == 2

    def test_tampering_detected(self):
        event = self.audit_trail.log_event(AuditEventType.CASE_ALLOCATED, "case", 100, metadata={"agent_id": 1})
        self.audit_trail.log_event(AuditEventType.CASE_ALLOCATED, "case", 101, metadata={"agent_id": 2})

        record = self.storage.load("audit_events", event.id)
        record["metadata"]["agent_id"] = 7
        self.storage.save("audit_events", event.id, record)

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_before_after_snapshot(self):
        event = self.audit_trail.log_event(
            AuditEventType.RULE_UPDATED, "rule", "r1",
            before={"name": "Pune", "priority": 1}, after={"name": "Pune", "priority": 5}
        )
        assert event.metadata["changed_fields"] == ["priority"]
        assert event.metadata["before"]["priority"] == 1

    def test_rolled_back_change_leaves_no_event(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit_trail.log_event(AuditEventType.CASE_ALLOCATED, "case", 100)
                raise RuntimeError("abort")

        assert self.audit_trail.count_events() == 0
        event = self.audit_trail.log_event(AuditEventType.CASE_ALLOCATED, "case", 100)
        assert event.sequence == 1
        assert self.audit_trail.verify_integrity()["valid"]

    def test_entity_and_time_queries(self):
        self.audit_trail.log_event(AuditEventType.CASE_ALLOCATED, "case", 100, user_id="alice")
        self.audit_trail.log_event(AuditEventType.RULE_CREATED, "rule", "r1", user_id="bob")
        self.audit_trail.log_event(AuditEventType.CASE_REALLOCATED, "case", 100, user_id="bob")

        case_events = self.audit_trail.get_events_for_entity("case", "100")
        assert [e.event_type for e in case_events] == [AuditEventType.CASE_ALLOCATED, AuditEventType.CASE_REALLOCATED]
        assert len(self.audit_trail.get_events_for_entity("case", 100, limit=1)) == 1
        assert [e.entity_type for e in self.audit_trail.get_all_events(user_id="bob")] == ["rule", "case"]

        event = case_events[0]
        assert self.audit_trail.get_event_by_id(event.id).current_hash == event.current_hash

    def test_disabled_trail(self):
        trail = AuditTrail(self.storage, enabled=False)
        assert trail.log_event(AuditEventType.CASE_ALLOCATED, "case", 100) is None
        assert trail.count_events() == 0

    def test_chain_on_sqlite(self):
        storage = SQLiteStorage(":memory:")
        trail = AuditTrail(storage)
        for case_id in range(5):
            trail.log_event(AuditEventType.CASE_ALLOCATED, "case", case_id)
        assert trail.verify_integrity() == {
            'valid': True, 'total_events': 5, 'hash_errors': [], 'chain_breaks': []
        }
        storage.close()

    def test_changed_fields_helper(self):
        assert changed_fields(None, {"a": 1}) == ["a"]
        assert changed_fields({"a": 1, "b": 2}, {"a": 1, "b": 3}) == ["b"]


class TestEventDispatcher:
    """Publish and subscribe"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()
        self.received = []

    def test_specific_and_global_handlers(self):
        everything = []
        self.dispatcher.subscribe(DomainEvent.CASE_ALLOCATED, self.received.append)
        self.dispatcher.subscribe_all(everything.append)

        outbox = EventOutbox(InMemoryStorage())
        self.dispatcher.publish(outbox.enqueue(DomainEvent.CASE_ALLOCATED, "case", 100, {"agent_id": 1}))
        self.dispatcher.publish(outbox.enqueue(DomainEvent.CASE_DEALLOCATED, "case", 100, {}))

        assert len(self.received) == 1
        assert len(everything) == 2
        assert self.dispatcher.get_handler_count() == 2

    def test_failing_handler_does_not_block_others(self):
        def broken(event):
            raise RuntimeError("handler failure")

        self.dispatcher.subscribe(DomainEvent.BATCH_COMPLETED, broken)
        self.dispatcher.subscribe(DomainEvent.BATCH_COMPLETED, self.received.append)

        outbox = EventOutbox(InMemoryStorage())
        self.dispatcher.publish(outbox.enqueue(DomainEvent.BATCH_COMPLETED, "batch", "B1", {}))
        assert len(self.received) == 1

    def test_unsubscribe(self):
        self.dispatcher.subscribe(DomainEvent.CASE_ALLOCATED, self.received.append)
        self.dispatcher.unsubscribe(DomainEvent.CASE_ALLOCATED, self.received.append)
        assert self.dispatcher.get_handler_count(DomainEvent.CASE_ALLOCATED) == 0


class TestOutboxRelay:
    """Events are published only after their transaction commits"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.outbox = EventOutbox(self.storage)
        self.dispatcher = EventDispatcher()
        self.relay = OutboxRelay(self.outbox, self.dispatcher)
        self.received = []
        self.dispatcher.subscribe_all(self.received.append)

    def test_relay_delivers_once(self):
        self.outbox.enqueue(DomainEvent.CASE_ALLOCATED, "case", 100, {"agent_id": 1})
        self.outbox.enqueue(DomainEvent.CASE_ALLOCATED, "case", 101, {"agent_id": 1})

        assert self.relay.relay_pending() == 2
        assert self.relay.relay_pending() == 0
        assert [e.entity_id for e in self.received] == ["100", "101"]
        assert self.outbox.count_pending() == 0

    def test_no_relay_inside_transaction(self):
        with self.storage.atomic():
            self.outbox.enqueue(DomainEvent.CASE_ALLOCATED, "case", 100, {})
            assert self.relay.relay_pending() == 0
        assert self.received == []
        assert self.relay.relay_pending() == 1

    def test_rolled_back_events_never_published(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.outbox.enqueue(DomainEvent.CASE_ALLOCATED, "case", 100, {})
                raise RuntimeError("abort")
        assert self.relay.relay_pending() == 0
        assert self.received == []

    def test_disabled_relay_keeps_events_pending(self):
        relay = OutboxRelay(self.outbox, self.dispatcher, enabled=False)
        self.outbox.enqueue(DomainEvent.JOB_COMPLETED, "job", "J1", {})
        assert relay.relay_pending() == 0
        assert self.outbox.count_pending() == 1

    def test_relay_on_sqlite(self):
        storage = SQLiteStorage(":memory:")
        outbox = EventOutbox(storage)
        relay = OutboxRelay(outbox, self.dispatcher)
        outbox.enqueue(DomainEvent.RULE_APPLIED, "rule", "r1", {"allocated": 3})
        assert relay.relay_pending() == 1
        assert outbox.count_pending() == 0
        assert self.received[0].data == {"allocated": 3}
        storage.close()


class TestJobRunner:
    """Background execution"""

    def test_submit_and_wait(self):
        runner = JobRunner(max_workers=2)
        started = threading.Event()
        release = threading.Event()
        results = []

        def work(value):
            started.set()
            release.wait(5)
            results.append(value)
            return value

        future = runner.submit("job-1", work, 42)
        started.wait(5)
        assert runner.is_running("job-1")

        release.set()
        runner.wait("job-1", timeout=5)
        assert not runner.is_running("job-1")
        assert future.result() == 42
        assert results == [42]
        runner.shutdown()

    def test_failures_surface_on_future(self):
        runner = JobRunner(max_workers=1)

        def explode():
            raise ValueError("bad job")

        future = runner.submit("job-2", explode)
        runner.wait()
        with pytest.raises(ValueError):
            future.result()
        runner.shutdown()

    def test_finished_jobs_are_forgotten(self):
        runner = JobRunner(max_workers=2)
        futures = [runner.submit(f"batch-{n}", lambda value: value * 2, n) for n in range(5)]
        runner.shutdown(wait=True)

        assert [f.result() for f in futures] == [0, 2, 4, 6, 8]
        assert runner.pending_count() == 0
        assert not runner.is_running("batch-0")
        runner.wait("batch-0")

    def test_unknown_key(self):
        runner = JobRunner(max_workers=1)
        assert not runner.is_running("missing")
        runner.wait("missing")
        runner.shutdown()


class TestStructuredLogging:
    """JSON log records"""

    def test_log_action_fields(self):
        logger = get_logger("allocation_engine.test")
        logger.setLevel(logging.INFO)
        captured = []

        class Capture(logging.Handler):
            def emit(self, record):
                captured.append(JSONFormatter().format(record))

        handler = Capture()
        logger.addHandler(handler)
        try:
            log_action(logger, "info", "Case 100 allocated", user_id="ops", action="allocate",
                       resource="case:100", batch_id="ALLOC_BATCH_1", extra={"agent_id": 1})
            log_action(logger, "debug", "not emitted")
        finally:
            logger.removeHandler(handler)

        assert len(captured) == 1
        entry = json.loads(captured[0])
        assert entry["message"] == "Case 100 allocated"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "ops"
        assert entry["resource"] == "case:100"
        assert entry["batch_id"] == "ALLOC_BATCH_1"
        assert entry["extra"] == {"agent_id": 1}
        assert "correlation_id" not in entry

"""
Allocation system container and FastAPI dependency
"""

from threading import Lock
from typing import Optional

from ..config import AllocationConfig, get_config
from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..events import EventDispatcher, EventOutbox, OutboxRelay
from ..directory import AgentDirectory, CaseDirectory
from ..store import AllocationStore
from ..rules import RuleManager, RuleEvaluator
from ..allocation import AllocationOrchestrator
from ..ingestion import BatchIngestionPipeline
from ..failure_analysis import FailureAnalyzer
from ..jobs import JobRunner


class AllocationSystem:
    """Allocation engine with all components initialized"""

    def __init__(self, config: Optional[AllocationConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.dispatcher = EventDispatcher()
        self.outbox = EventOutbox(self.storage)
        self.relay = OutboxRelay(self.outbox, self.dispatcher, enabled=self.config.enable_outbox_relay)
        self.jobs = JobRunner(max_workers=self.config.worker_threads)

        self.agents = AgentDirectory(self.storage)
        self.cases = CaseDirectory(self.storage)
        self.store = AllocationStore(self.storage)

        self.rule_manager = RuleManager(self.storage, self.audit_trail)
        self.evaluator = RuleEvaluator(self.rule_manager, self.agents, self.cases, self.store)
        self.orchestrator = AllocationOrchestrator(
            self.storage, self.store, self.agents, self.cases,
            self.rule_manager, self.evaluator, self.audit_trail,
            self.outbox, self.relay, self.jobs
        )
        self.ingestion = BatchIngestionPipeline(
            self.storage, self.store, self.orchestrator, self.agents, self.cases,
            self.audit_trail, self.outbox, self.relay, self.jobs, self.config
        )
        self.failure_analyzer = FailureAnalyzer(self.store, self.config)

    def start(self) -> None:
        """Deliver events left in the outbox and resume unfinished batches"""
        self.relay.relay_pending()
        if self.config.recover_batches_on_startup:
            self.ingestion.recover_stalled_batches()

    def close(self) -> None:
        self.jobs.shutdown(wait=True)
        self.storage.close()


_system: Optional[AllocationSystem] = None
_system_lock = Lock()


# Dependency to get the allocation system
def get_allocation_system() -> AllocationSystem:
    global _system
    with _system_lock:
        if _system is None:
            _system = AllocationSystem()
            _system.start()
        return _system

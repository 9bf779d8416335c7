"""
Shared fixtures: an in-memory allocation system with a few agents and cases
"""

import pytest

from allocation_engine.config import AllocationConfig
from allocation_engine.storage import InMemoryStorage
from allocation_engine.api.deps import AllocationSystem


def build_system(staging_dir, **overrides) -> AllocationSystem:
    """In-memory system with uploads staged under ``staging_dir``"""
    settings = dict(
        database_url="memory://",
        staging_dir=str(staging_dir),
        worker_threads=2,
        recover_batches_on_startup=False,
    )
    settings.update(overrides)
    config = AllocationConfig(**settings)
    return AllocationSystem(config=config, storage=InMemoryStorage())


def seed(system: AllocationSystem, capacity: int = 10) -> None:
    """Three Pune agents, one Mumbai agent and ten Pune cases (100-109)"""
    system.agents.register_agent(1, "Asha Rao", geography_code="MH-PUNE", state="Maharashtra", city="Pune", capacity=capacity)
    system.agents.register_agent(2, "Vikram Shah", geography_code="MH-PUNE", state="Maharashtra", city="Pune", capacity=capacity)
    system.agents.register_agent(3, "Meera Iyer", geography_code="MH-PUNE", state="Maharashtra", city="Pune", capacity=capacity)
    system.agents.register_agent(4, "Rahul Desai", geography_code="MH-MUMBAI", state="Maharashtra", city="Mumbai", capacity=capacity)
    for case_id in range(100, 110):
        system.cases.register_case(
            case_id,
            external_case_id=f"EXT-{case_id}",
            loan_account_number=f"LN{case_id:07d}",
            customer_name=f"Customer {case_id}",
            geography_code="MH-PUNE",
            state="Maharashtra",
            city="Pune",
            bucket="B1" if case_id % 2 == 0 else "B2",
            dpd=30 + case_id - 100,
            outstanding=str(10000 + (case_id - 100) * 1000),
            due_date=None,
        )


@pytest.fixture
def system(tmp_path):
    """Seeded in-memory allocation system"""
    allocation_system = build_system(tmp_path / "uploads")
    seed(allocation_system)
    yield allocation_system
    allocation_system.close()

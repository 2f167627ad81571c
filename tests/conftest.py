"""
Shared pytest fixtures for test suite.

Provides:
- File-backed SQLite engine per test (real transactions, real threads)
- GridService wired with a deterministic RNG and no canary sampling
- Node registration and task creation factories
- Store inspection helpers
"""

import os
import random
import sys
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import select

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from computegrid.config import GridConfig
from computegrid.core.storage import (
    ComputeTask,
    NodeTrust,
    TaskAssignment,
    create_grid_engine,
    init_db,
    session_scope,
)
from computegrid.core.tasks import generate_ml_inference_task, generate_task
from computegrid.service import GridService

TEST_SECRET = "test-manifest-secret"

# Comfortably inside every plausibility window at difficulty 1
PLAUSIBLE_MS = {
    "matrix_mult": 250,
    "hash_compute": 120,
    "ml_inference": 800,
}


# =============================================================================
# ENGINE / SERVICE
# =============================================================================

@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database file with the full schema."""
    engine = create_grid_engine(f"sqlite:///{tmp_path / 'grid.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def config(tmp_path):
    return GridConfig(
        database_url=f"sqlite:///{tmp_path / 'grid.db'}",
        manifest_secret=TEST_SECRET,
        task_pool_min=5,
        canary_pool_min=2,
        task_redundancy=3,
        canary_frequency=0.0,
        cors_origins=["http://localhost"],
    )


@pytest.fixture
def service(engine, config):
    return GridService(config, engine=engine, rng=random.Random(1234))


@pytest.fixture
def session_factory(service):
    return service.session_factory


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def register_nodes(service):
    """Register `count` nodes and return their device ids."""
    counter = {"n": 0}

    def create(count: int = 1, gpu: bool = False, prefix: str = "device") -> List[str]:
        device_ids = []
        for _ in range(count):
            counter["n"] += 1
            device_id = f"{prefix}-{counter['n']:03d}"
            service.register_node(device_id, wallet_address=f"wallet-{counter['n']}")
            service.register_capabilities(device_id, {"webgpu_supported": gpu, "cpu_cores": 4})
            device_ids.append(device_id)
        return device_ids

    return create


@pytest.fixture
def make_task(service):
    """Store one task and return its task id."""

    def create(
        task_type: str = "hash_compute",
        difficulty: int = 1,
        redundancy: int = 3,
        priority: int = 5,
    ) -> str:
        if task_type == "ml_inference":
            spec = generate_ml_inference_task(difficulty, seed=42)
        else:
            spec = generate_task(task_type, difficulty)
        service.generator.store_task(spec, priority=priority, redundancy=redundancy)
        create.specs[spec.task_uuid] = spec
        return spec.task_uuid

    create.specs = {}
    return create


# =============================================================================
# STORE HELPERS
# =============================================================================

def get_task(session_factory, task_id: str) -> Dict[str, Any]:
    with session_scope(session_factory) as session:
        task = session.execute(select(ComputeTask).where(ComputeTask.task_uuid == task_id)).scalar_one()
        return {
            "id": task.id,
            "status": task.status,
            "redundancy_count": task.redundancy_count,
            "expected_output_hash": task.expected_output_hash,
            "has_result": task.result is not None,
            "result": None if task.result is None else {
                "consensus_hash": task.result.consensus_hash,
                "consensus_reached": task.result.consensus_reached,
                "matching_submissions": task.result.matching_submissions,
                "total_submissions": task.result.total_submissions,
                "final_result": task.result.final_result,
            },
        }


def get_assignments(session_factory, task_id: Optional[str] = None, device_id: Optional[str] = None):
    stmt = select(TaskAssignment).join(ComputeTask, TaskAssignment.task_id == ComputeTask.id)
    if task_id is not None:
        stmt = stmt.where(ComputeTask.task_uuid == task_id)
    if device_id is not None:
        stmt = stmt.where(TaskAssignment.device_id == device_id)
    with session_scope(session_factory) as session:
        return list(session.execute(stmt.order_by(TaskAssignment.id)).scalars().all())


def set_trust(session_factory, device_id: str, score: float, canary_failures: int = 0) -> None:
    with session_scope(session_factory) as session:
        record = session.execute(select(NodeTrust).where(NodeTrust.device_id == device_id)).scalar_one_or_none()
        if record is None:
            record = NodeTrust(device_id=device_id)
            session.add(record)
        record.trust_score = score
        record.canary_failures = canary_failures

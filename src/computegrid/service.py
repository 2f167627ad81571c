"""
GridService - the one object transports talk to.

Wires the store, generator, dispatcher, verifier, trust manager and reaper
from a GridConfig. The HTTP adapter, the CLI and the tests all go through
this facade; none of them touch the subsystems directly.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from computegrid.config import GridConfig
from computegrid.core.consensus import ConsensusVerifier, TrustManager
from computegrid.core.dispatch import AssignmentReaper, TaskDispatcher
from computegrid.core.errors import UnknownNode
from computegrid.core.storage import (
    CanaryTask,
    Node,
    NodeCapabilities,
    create_grid_engine,
    create_session_factory,
    init_db,
    insert_ignore,
    session_scope,
    utcnow,
)
from computegrid.core.tasks import TaskGenerator

logger = logging.getLogger(__name__)

CAPABILITY_FIELDS = (
    "cpu_cores",
    "cpu_benchmark_score",
    "gpu_available",
    "gpu_vendor",
    "gpu_renderer",
    "webgpu_supported",
    "wasm_supported",
    "memory_gb",
    "estimated_tflops",
)


class GridService:
    def __init__(self, config: GridConfig, engine: Optional[Engine] = None, rng=None):
        self.config = config
        self.engine = engine or create_grid_engine(config.database_url)
        self.session_factory = create_session_factory(self.engine)

        self.trust = TrustManager(self.session_factory)
        self.generator = TaskGenerator(self.session_factory, redundancy=config.task_redundancy, rng=rng)
        self.dispatcher = TaskDispatcher(
            self.session_factory,
            self.trust,
            config.manifest_secret,
            canary_frequency=config.canary_frequency,
            min_trust_score=config.min_trust_score,
            rng=rng,
        )
        self.verifier = ConsensusVerifier(
            self.session_factory,
            self.trust,
            manifest_secret=config.manifest_secret,
            require_signature=config.require_manifest_signature,
        )
        self.reaper = AssignmentReaper(self.session_factory)

    @classmethod
    def from_env(cls) -> "GridService":
        return cls(GridConfig.from_env())

    def init_db(self) -> None:
        init_db(self.engine)

    # =========================================================================
    # NODES
    # =========================================================================

    def register_node(self, device_id: str, wallet_address: Optional[str] = None) -> Dict[str, Any]:
        """Idempotent. A wallet address, when given, replaces the stored one."""
        if not device_id:
            raise ValueError("device_id is required")

        now = utcnow()
        with session_scope(self.session_factory) as session:
            insert_ignore(
                session,
                Node,
                {"device_id": device_id, "wallet_address": wallet_address, "created_at": now, "last_seen_at": now},
                conflict_columns=["device_id"],
            )
            node = session.execute(
                select(Node).where(Node.device_id == device_id).with_for_update()
            ).scalar_one()
            if wallet_address and node.wallet_address != wallet_address:
                node.wallet_address = wallet_address
            node.last_seen_at = now

            return {
                "device_id": node.device_id,
                "wallet_address": node.wallet_address,
                "total_compute_credits": node.total_compute_credits,
                "claimable_balance": node.claimable_balance,
            }

    def register_capabilities(self, device_id: str, capabilities: Dict[str, Any]) -> Dict[str, Any]:
        """
        Store a node's declared hardware profile (upsert).

        Capabilities are self-reported and only used to filter what the node
        is offered; they grant no trust.
        """
        values = {k: capabilities[k] for k in CAPABILITY_FIELDS if capabilities.get(k) is not None}
        now = utcnow()

        with session_scope(self.session_factory) as session:
            node = session.execute(select(Node).where(Node.device_id == device_id)).scalar_one_or_none()
            if node is None:
                raise UnknownNode(device_id)

            insert_ignore(
                session,
                NodeCapabilities,
                {"node_id": node.id, "device_id": device_id, "created_at": now, "updated_at": now},
                conflict_columns=["device_id"],
            )
            record = session.execute(
                select(NodeCapabilities).where(NodeCapabilities.device_id == device_id).with_for_update()
            ).scalar_one()
            for key, value in values.items():
                setattr(record, key, value)
            record.last_benchmark_at = now
            record.updated_at = now

        logger.info(f"Capabilities registered for {device_id[:16]}: "
                    f"webgpu={bool(values.get('webgpu_supported'))}, tflops={values.get('estimated_tflops', 0)}")
        return {"success": True, "device_id": device_id}

    def _stored_capabilities(self, device_id: str) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            record = session.execute(
                select(NodeCapabilities).where(NodeCapabilities.device_id == device_id)
            ).scalar_one_or_none()
            if record is None:
                return {}
            return {key: getattr(record, key) for key in CAPABILITY_FIELDS}

    # =========================================================================
    # TASK LIFECYCLE
    # =========================================================================

    def request_task(
        self,
        device_id: str,
        capabilities: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Returns a signed task manifest, or None when there is no work.

        Admission failures are raised (AdmissionError), never returned as None.
        Without explicit capabilities the node's registered profile is used.
        """
        if capabilities is None:
            capabilities = self._stored_capabilities(device_id)
        task = self.dispatcher.next_task(device_id, capabilities)
        return task.to_manifest() if task is not None else None

    def start_task(self, device_id: str, task_id: str) -> Dict[str, Any]:
        tracked = self.dispatcher.mark_processing(device_id, task_id)
        return {"success": True, "task_id": task_id, "tracked": tracked}

    def submit_result(
        self,
        device_id: str,
        task_id: str,
        result: Any,
        execution_time_ms: float,
        signature: Optional[str] = None,
    ) -> Dict[str, Any]:
        outcome = self.verifier.submit_result(device_id, task_id, result, execution_time_ms, signature)
        return outcome.to_dict()

    # =========================================================================
    # TRUST / REPORTING
    # =========================================================================

    def get_trust_info(self, device_id: str) -> Dict[str, Any]:
        return self.trust.get_trust_info(device_id)

    def detect_anomalies(self, device_id: str) -> Dict[str, Any]:
        return self.trust.detect_anomalies(device_id).to_dict()

    def run_integrity_check(self) -> Dict[str, Any]:
        return self.trust.run_integrity_check().to_dict()

    def queue_stats(self) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            canaries = dict(
                session.execute(
                    select(CanaryTask.task_type, func.count(CanaryTask.id)).group_by(CanaryTask.task_type)
                ).all()
            )
        return {"tasks": self.dispatcher.queue_stats(), "canaries": canaries}

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def top_up(self, min_tasks: Optional[int] = None, min_canaries: Optional[int] = None) -> Dict[str, int]:
        min_tasks = self.config.task_pool_min if min_tasks is None else min_tasks
        min_canaries = self.config.canary_pool_min if min_canaries is None else min_canaries
        return {
            "tasks_created": self.generator.ensure_task_pool(min_tasks),
            "canaries_created": self.generator.ensure_canary_pool(min_canaries),
        }

    def maintain(self) -> Dict[str, int]:
        """One scheduler tick: reap, expire, then refill the pools."""
        summary = {
            "assignments_reaped": self.reaper.reap_stale(),
            "tasks_expired": self.reaper.expire_tasks(),
        }
        summary.update(self.top_up())
        logger.debug(f"Maintenance tick: {summary}")
        return summary

"""
Task Dispatcher

Hands each requesting node at most one task per call.

Dispatch order:
1. Admission: node registered, not banned, trust at or above the floor
2. With a small probability, a random canary the node can execute
3. Otherwise the highest-priority, oldest task that still has a free
   redundancy slot and that this node has not already taken. Expiry only
   closes pending tasks; an assigned task whose slots were freed by the
   reaper stays claimable until it completes.

Claims lock the candidate row with FOR UPDATE SKIP LOCKED so that concurrent
requests walk past each other instead of queueing on the same task. The slot
count is re-read after the lock; a task that filled up in the meantime is
skipped and the next candidate is tried.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import exists, func, or_, select
from sqlalchemy.orm import Session, sessionmaker

from computegrid.core.consensus.trust import TrustManager
from computegrid.core.economics.constants import (
    CANARY_REWARD,
    CANARY_TASK_FREQUENCY,
    MAX_CLAIM_ATTEMPTS,
    MIN_TRUST_SCORE,
    get_execution_time_range,
)
from computegrid.core.errors import (
    AssignmentNotFound,
    NodeBanned,
    TrustTooLow,
    UnknownNode,
)
from computegrid.core.integrity import is_canary_id, manifest_timestamp, sign_manifest
from computegrid.core.storage import (
    AssignmentStatus,
    CanaryTask,
    ComputeTask,
    Node,
    TaskAssignment,
    TaskStatus,
    session_scope,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchedTask:
    """A task as handed to a node, plus the canary answer kept server-side."""
    task_id: str
    task_type: str
    input_data: Dict[str, Any]
    input_hash: str
    difficulty: int
    reward_credits: float
    max_execution_time_ms: int
    requires_gpu: bool
    expires_at: Optional[str]
    signature: str
    is_canary: bool = False
    model_url: Optional[str] = None
    model_hash: Optional[str] = None
    known_output_hash: Optional[str] = field(default=None, repr=False)

    def to_manifest(self) -> dict:
        """Public manifest. Never includes the canary answer."""
        manifest = {
            "task_id": self.task_id,
            "task_type": self.task_type,
            "input_data": self.input_data,
            "input_hash": self.input_hash,
            "difficulty": self.difficulty,
            "reward_credits": self.reward_credits,
            "max_execution_time_ms": self.max_execution_time_ms,
            "requires_gpu": self.requires_gpu,
            "expires_at": self.expires_at,
            "signature": self.signature,
            "is_canary": self.is_canary,
        }
        if self.model_url:
            manifest["model_url"] = self.model_url
            manifest["model_hash"] = self.model_hash
        return manifest


def supports_gpu(capabilities: Optional[Dict[str, Any]]) -> bool:
    return bool((capabilities or {}).get("webgpu_supported"))


class TaskDispatcher:
    """
    Usage:
        dispatcher = TaskDispatcher(session_factory, trust, manifest_secret)
        task = dispatcher.next_task("device-1", {"webgpu_supported": True})
        if task is None:
            ...  # nothing eligible, back off
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        trust: TrustManager,
        manifest_secret: str,
        canary_frequency: float = CANARY_TASK_FREQUENCY,
        min_trust_score: float = MIN_TRUST_SCORE,
        max_attempts: int = MAX_CLAIM_ATTEMPTS,
        rng: Optional[random.Random] = None,
    ):
        self.session_factory = session_factory
        self.trust = trust
        self.manifest_secret = manifest_secret
        self.canary_frequency = canary_frequency
        self.min_trust_score = min_trust_score
        self.max_attempts = max_attempts
        self.rng = rng or random.Random()

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def next_task(
        self,
        device_id: str,
        capabilities: Optional[Dict[str, Any]] = None,
    ) -> Optional[DispatchedTask]:
        """
        Assign the next task to a node.

        Raises:
            UnknownNode, NodeBanned, TrustTooLow: the node may not receive work

        Returns:
            DispatchedTask, or None when nothing is eligible
        """
        self.check_admission(device_id)
        has_gpu = supports_gpu(capabilities)

        if self.rng.random() < self.canary_frequency:
            canary = self._pick_canary(has_gpu)
            if canary is not None:
                logger.debug(f"Serving canary {canary.task_id} to {device_id[:16]}")
                return canary

        return self._claim(device_id, has_gpu)

    def check_admission(self, device_id: str) -> float:
        """Returns the node's effective trust score, or raises an AdmissionError."""
        with session_scope(self.session_factory) as session:
            node_id = session.execute(
                select(Node.id).where(Node.device_id == device_id)
            ).scalar_one_or_none()
            if node_id is None:
                raise UnknownNode(device_id)

            record = self.trust.get_or_create(session, device_id)
            if record.banned:
                raise NodeBanned(device_id, record.ban_reason)
            score = self.trust.effective_score(record)

        if score < self.min_trust_score:
            raise TrustTooLow(device_id, score)
        return score

    def _pick_canary(self, has_gpu: bool) -> Optional[DispatchedTask]:
        stmt = select(CanaryTask)
        if not has_gpu:
            stmt = stmt.where(CanaryTask.requires_gpu.is_(False))
        stmt = stmt.order_by(func.random()).limit(1)

        with session_scope(self.session_factory) as session:
            canary = session.execute(stmt).scalar_one_or_none()
            if canary is None:
                return None
            manifest = {
                "task_id": canary.task_uuid,
                "task_type": canary.task_type,
                "input_hash": canary.input_hash,
                "expires_at": None,
            }
            return DispatchedTask(
                task_id=canary.task_uuid,
                task_type=canary.task_type,
                input_data=canary.input_data,
                input_hash=canary.input_hash,
                difficulty=1,
                reward_credits=CANARY_REWARD,
                max_execution_time_ms=get_execution_time_range(canary.task_type, 1)[1],
                requires_gpu=canary.requires_gpu,
                expires_at=None,
                signature=sign_manifest(manifest, self.manifest_secret),
                is_canary=True,
                known_output_hash=canary.known_output_hash,
            )

    def _candidate_query(self, device_id: str, has_gpu: bool, now, excluded):
        counted = (
            select(func.count(TaskAssignment.id))
            .where(
                TaskAssignment.task_id == ComputeTask.id,
                TaskAssignment.status.in_(AssignmentStatus.COUNTED),
            )
            .correlate(ComputeTask)
            .scalar_subquery()
        )
        already_taken = exists().where(
            TaskAssignment.task_id == ComputeTask.id,
            TaskAssignment.device_id == device_id,
            TaskAssignment.status.in_(AssignmentStatus.COUNTED),
        )

        stmt = select(ComputeTask).where(
            ComputeTask.status.in_(TaskStatus.DISPATCHABLE),
            # assigned tasks keep refilling reaped slots past expiry
            or_(ComputeTask.expires_at > now, ComputeTask.status == TaskStatus.ASSIGNED),
            ~already_taken,
            counted < ComputeTask.redundancy_count,
        )
        if not has_gpu:
            stmt = stmt.where(ComputeTask.requires_gpu.is_(False))
        if excluded:
            stmt = stmt.where(ComputeTask.id.not_in(sorted(excluded)))

        return (
            stmt.order_by(ComputeTask.priority.desc(), ComputeTask.created_at.asc(), ComputeTask.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True, of=ComputeTask)
        )

    @staticmethod
    def _counted_assignments(session: Session, task_pk: int) -> int:
        return session.execute(
            select(func.count(TaskAssignment.id)).where(
                TaskAssignment.task_id == task_pk,
                TaskAssignment.status.in_(AssignmentStatus.COUNTED),
            )
        ).scalar_one()

    def _claim(self, device_id: str, has_gpu: bool) -> Optional[DispatchedTask]:
        excluded = set()

        for _ in range(self.max_attempts):
            with session_scope(self.session_factory) as session:
                now = utcnow()
                task = session.execute(
                    self._candidate_query(device_id, has_gpu, now, excluded)
                ).scalar_one_or_none()
                if task is None:
                    return None

                if self._counted_assignments(session, task.id) >= task.redundancy_count:
                    # filled between the candidate scan and the lock
                    excluded.add(task.id)
                    continue

                node = session.execute(select(Node).where(Node.device_id == device_id)).scalar_one()
                session.add(TaskAssignment(
                    task_id=task.id,
                    node_id=node.id,
                    device_id=device_id,
                    status=AssignmentStatus.ASSIGNED,
                    assigned_at=now,
                ))
                if task.status == TaskStatus.PENDING:
                    task.status = TaskStatus.ASSIGNED
                node.last_seen_at = now
                session.flush()

                dispatched = self._dispatched_from_row(task)

            logger.info(f"Assigned {dispatched.task_id} ({dispatched.task_type}) to {device_id[:16]}")
            return dispatched

        logger.debug(f"No claimable task for {device_id[:16]} after {self.max_attempts} attempts")
        return None

    def _dispatched_from_row(self, task: ComputeTask) -> DispatchedTask:
        expires_at = manifest_timestamp(task.expires_at)
        manifest = {
            "task_id": task.task_uuid,
            "task_type": task.task_type,
            "input_hash": task.input_hash,
            "expires_at": expires_at,
        }
        return DispatchedTask(
            task_id=task.task_uuid,
            task_type=task.task_type,
            input_data=task.input_data,
            input_hash=task.input_hash,
            difficulty=task.difficulty,
            reward_credits=float(task.reward_credits),
            max_execution_time_ms=task.max_execution_time_ms,
            requires_gpu=task.requires_gpu,
            expires_at=expires_at,
            signature=sign_manifest(manifest, self.manifest_secret),
            model_url=task.model_url,
            model_hash=task.model_hash,
        )

    # =========================================================================
    # LIFECYCLE / STATS
    # =========================================================================

    def mark_processing(self, device_id: str, task_id: str) -> bool:
        """
        Record that the node started executing its assignment.

        Canaries are not tracked as assignments; for them this is a no-op.

        Returns:
            True if an assignment moved to processing
        """
        if is_canary_id(task_id):
            return False

        with session_scope(self.session_factory) as session:
            assignment = session.execute(
                select(TaskAssignment)
                .join(ComputeTask, TaskAssignment.task_id == ComputeTask.id)
                .where(
                    ComputeTask.task_uuid == task_id,
                    TaskAssignment.device_id == device_id,
                    TaskAssignment.status == AssignmentStatus.ASSIGNED,
                )
                .with_for_update(of=TaskAssignment)
            ).scalar_one_or_none()
            if assignment is None:
                raise AssignmentNotFound(device_id, task_id)

            assignment.status = AssignmentStatus.PROCESSING
            assignment.started_at = utcnow()
        return True

    def queue_stats(self) -> List[Dict[str, Any]]:
        """Unexpired tasks grouped by (type, status) with mean difficulty."""
        stmt = (
            select(
                ComputeTask.task_type,
                ComputeTask.status,
                func.count(ComputeTask.id),
                func.avg(ComputeTask.difficulty),
            )
            .where(ComputeTask.expires_at > utcnow())
            .group_by(ComputeTask.task_type, ComputeTask.status)
            .order_by(ComputeTask.task_type, ComputeTask.status)
        )
        with session_scope(self.session_factory) as session:
            rows = session.execute(stmt).all()

        return [
            {
                "task_type": task_type,
                "status": status,
                "count": count,
                "avg_difficulty": round(float(avg), 2) if avg is not None else None,
            }
            for task_type, status, count, avg in rows
        ]

"""
Consensus Verifier - decides which submitted results earn credit.

Verification Layers:
====================
1. Plausibility: execution time must fall inside a per-type window scaled by
   difficulty. Checked on an unlocked read, before the task row is locked.
2. Canaries: results compared against a stored known answer. Trust only,
   never credit.
3. Deterministic tasks: the submission must equal the expected hash computed
   at generation time AND be among the most common submitted hashes.
4. Non-deterministic tasks: the submission must be the unique most common
   hash with at least ceil(redundancy / 2) votes.

Every regular submission runs in one transaction with the task row locked
FOR UPDATE, so the hash distribution, credit and finalization of one task are
never computed by two requests at once. Trust and node rows are then locked
in sorted order before any of them is written.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from computegrid.core.consensus.trust import TrustManager
from computegrid.core.economics.constants import (
    TRUST_PENALTY_REGULAR,
    TRUST_REWARD_REGULAR,
    consensus_quorum,
    get_execution_time_range,
)
from computegrid.core.errors import (
    AssignmentNotFound,
    CanaryNotFound,
    DuplicateSubmission,
    ImplausibleExecutionTime,
    InvalidManifestSignature,
    TaskNotFound,
)
from computegrid.core.integrity import (
    canonical_hash,
    is_canary_id,
    manifest_timestamp,
    verify_manifest,
)
from computegrid.core.storage import (
    AssignmentStatus,
    CanaryTask,
    ComputeTask,
    Earning,
    Node,
    TaskAssignment,
    TaskResult,
    TaskStatus,
    session_scope,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class SubmissionOutcome:
    """What the submitting node learns about its own result."""
    success: bool
    verified: bool
    credits_awarded: float
    result_hash: str
    is_canary: bool = False
    finalized: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "verified": self.verified,
            "credits_awarded": self.credits_awarded,
            "result_hash": self.result_hash,
            "is_canary": self.is_canary,
        }


# =============================================================================
# PLAUSIBILITY
# =============================================================================

class ExecutionTimeVerifier:
    """
    Rejects execution times no honest node could produce.

    Too fast means the answer was looked up or replayed; too slow means the
    node is at risk of blowing the task deadline.
    """

    TOO_FAST = "Execution too fast - possible pre-computation"
    TOO_SLOW = "Execution too slow - timeout risk"

    def check(self, task_type: str, execution_time_ms: float, difficulty: int = 1) -> Tuple[bool, str]:
        """
        Returns:
            (is_plausible, reason)
        """
        low, high = get_execution_time_range(task_type, difficulty)
        if execution_time_ms < low:
            return False, self.TOO_FAST
        if execution_time_ms > high:
            return False, self.TOO_SLOW
        return True, "OK"

    def require(self, task_type: str, execution_time_ms: float, difficulty: int = 1) -> None:
        ok, reason = self.check(task_type, execution_time_ms, difficulty)
        if not ok:
            raise ImplausibleExecutionTime(reason, execution_time_ms)


# =============================================================================
# CONSENSUS
# =============================================================================

class ConsensusVerifier:
    """
    Accepts result submissions and settles credit and trust.

    Usage:
        verifier = ConsensusVerifier(session_factory, TrustManager(session_factory))
        outcome = verifier.submit_result("device-1", task_id, result, 420)
        outcome.verified   # True once the result is accepted
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        trust: TrustManager,
        manifest_secret: Optional[str] = None,
        require_signature: bool = False,
    ):
        if require_signature and not manifest_secret:
            raise ValueError("require_signature needs a manifest secret")
        self.session_factory = session_factory
        self.trust = trust
        self.manifest_secret = manifest_secret
        self.require_signature = require_signature
        self.timing = ExecutionTimeVerifier()

    def submit_result(
        self,
        device_id: str,
        task_id: str,
        result: Any,
        execution_time_ms: float,
        signature: Optional[str] = None,
    ) -> SubmissionOutcome:
        """
        Record one node's result for one task.

        Raises:
            ValueError: result cannot be canonically serialized
            TaskNotFound / CanaryNotFound: unknown task id
            ImplausibleExecutionTime: outside the plausibility window
            InvalidManifestSignature: signature enforcement is on and the
                signature does not match the stored manifest
            AssignmentNotFound / DuplicateSubmission: no active assignment
        """
        try:
            result_hash = canonical_hash(result)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Result is not canonically serializable: {e}") from e

        if is_canary_id(task_id):
            return self._submit_canary(device_id, task_id, result_hash, execution_time_ms, signature)
        return self._submit_regular(device_id, task_id, result, result_hash, execution_time_ms, signature)

    # -------------------------------------------------------------------------
    # Canaries
    # -------------------------------------------------------------------------

    def _submit_canary(
        self,
        device_id: str,
        task_id: str,
        result_hash: str,
        execution_time_ms: float,
        signature: Optional[str],
    ) -> SubmissionOutcome:
        with session_scope(self.session_factory) as session:
            canary = session.execute(
                select(CanaryTask).where(CanaryTask.task_uuid == task_id)
            ).scalar_one_or_none()
            if canary is None:
                raise CanaryNotFound(task_id)

            self.timing.require(canary.task_type, execution_time_ms, 1)
            self._check_signature(task_id, canary.task_type, canary.input_hash, None, signature)

            passed = result_hash == canary.known_output_hash
            self.trust.record_canary_result(session, device_id, passed)

        if passed:
            logger.debug(f"Canary {task_id} passed by {device_id[:16]}")
        else:
            logger.info(f"Canary {task_id} FAILED by {device_id[:16]}")

        return SubmissionOutcome(
            success=True,
            verified=passed,
            credits_awarded=0.0,
            result_hash=result_hash,
            is_canary=True,
        )

    # -------------------------------------------------------------------------
    # Regular tasks
    # -------------------------------------------------------------------------

    def _submit_regular(
        self,
        device_id: str,
        task_id: str,
        result: Any,
        result_hash: str,
        execution_time_ms: float,
        signature: Optional[str],
    ) -> SubmissionOutcome:
        # plausibility only needs type and difficulty; no row lock yet
        with session_scope(self.session_factory) as session:
            row = session.execute(
                select(ComputeTask.task_type, ComputeTask.difficulty).where(ComputeTask.task_uuid == task_id)
            ).one_or_none()
        if row is None:
            raise TaskNotFound(task_id)
        self.timing.require(row.task_type, execution_time_ms, row.difficulty)

        with session_scope(self.session_factory) as session:
            task = session.execute(
                select(ComputeTask).where(ComputeTask.task_uuid == task_id).with_for_update()
            ).scalar_one_or_none()
            if task is None:
                raise TaskNotFound(task_id)

            self._check_signature(
                task_id, task.task_type, task.input_hash, manifest_timestamp(task.expires_at), signature
            )

            assignment = self._active_assignment(session, task, device_id)

            assignment.status = AssignmentStatus.COMPLETED
            assignment.completed_at = utcnow()
            assignment.result_hash = result_hash
            assignment.result_data = result
            assignment.execution_time_ms = int(round(execution_time_ms))
            session.flush()

            counts = self._hash_counts(session, task.id)
            finalizing = sum(counts.values()) >= task.redundancy_count and task.status != TaskStatus.COMPLETED
            self._lock_participants(session, task, assignment, finalizing)

            verified = self._is_verified(task, result_hash, counts)

            if verified:
                self._credit(session, task, assignment)
                self.trust.on_success(session, device_id, TRUST_REWARD_REGULAR)
            elif task.expected_output_hash is not None and result_hash != task.expected_output_hash:
                self.trust.on_failure(session, device_id, TRUST_PENALTY_REGULAR)

            if finalizing:
                self._finalize(session, task, counts)

            outcome = SubmissionOutcome(
                success=True,
                verified=assignment.verified,
                credits_awarded=assignment.credits_awarded,
                result_hash=result_hash,
                finalized=finalizing,
            )

        logger.debug(f"Result for {task_id} from {device_id[:16]}: verified={outcome.verified} "
                     f"finalized={outcome.finalized}")
        return outcome

    def _lock_participants(
        self,
        session: Session,
        task: ComputeTask,
        assignment: TaskAssignment,
        finalizing: bool,
    ) -> None:
        """
        Take every trust and node row lock this submission may need, up front.

        Trust rows are locked in device_id order, then node rows in id order.
        A finalization touches every completed submitter, so two submissions
        finalizing different tasks with overlapping nodes always lock in the
        same order.
        """
        if finalizing:
            participants = session.execute(
                select(TaskAssignment.device_id, TaskAssignment.node_id).where(
                    TaskAssignment.task_id == task.id,
                    TaskAssignment.status == AssignmentStatus.COMPLETED,
                )
            ).all()
        else:
            participants = [(assignment.device_id, assignment.node_id)]

        for device_id in sorted({device_id for device_id, _ in participants}):
            self.trust.get_or_create(session, device_id, lock=True)
        session.execute(
            select(Node.id)
            .where(Node.id.in_(sorted({node_id for _, node_id in participants})))
            .order_by(Node.id)
            .with_for_update()
        ).all()

    def _active_assignment(self, session: Session, task: ComputeTask, device_id: str) -> TaskAssignment:
        assignments = session.execute(
            select(TaskAssignment).where(
                TaskAssignment.task_id == task.id,
                TaskAssignment.device_id == device_id,
            )
        ).scalars().all()

        for assignment in assignments:
            if assignment.status in AssignmentStatus.ACTIVE:
                return assignment
        if any(a.status == AssignmentStatus.COMPLETED for a in assignments):
            raise DuplicateSubmission(device_id, task.task_uuid)
        raise AssignmentNotFound(device_id, task.task_uuid)

    @staticmethod
    def _hash_counts(session: Session, task_pk: int) -> Counter:
        """Submitted hashes in arrival order, so ties break toward the earliest."""
        hashes = session.execute(
            select(TaskAssignment.result_hash)
            .where(
                TaskAssignment.task_id == task_pk,
                TaskAssignment.status == AssignmentStatus.COMPLETED,
            )
            .order_by(TaskAssignment.completed_at, TaskAssignment.id)
        ).scalars().all()
        return Counter(h for h in hashes if h is not None)

    @staticmethod
    def _is_verified(task: ComputeTask, result_hash: str, counts: Counter) -> bool:
        count = counts.get(result_hash, 0)
        if count == 0:
            return False
        top = max(counts.values())

        if task.expected_output_hash is not None:
            # ties allowed, a lone submission wins by default
            return result_hash == task.expected_output_hash and count == top

        leaders = [h for h, c in counts.items() if c == top]
        return leaders == [result_hash] and count >= consensus_quorum(task.redundancy_count)

    @staticmethod
    def _consensus(task: ComputeTask, counts: Counter) -> Tuple[Optional[str], int, bool]:
        """
        (consensus_hash, matching_submissions, consensus_reached)

        Without consensus the hash is the most common submission, earliest
        first on ties, and matching counts the expected hash where one exists.
        """
        if not counts:
            return None, 0, False
        modal, top = counts.most_common(1)[0]

        if task.expected_output_hash is not None:
            matching = counts.get(task.expected_output_hash, 0)
            if matching and matching == top:
                return task.expected_output_hash, matching, True
            return modal, matching, False

        leaders = [h for h, c in counts.items() if c == top]
        return modal, top, len(leaders) == 1 and top >= consensus_quorum(task.redundancy_count)

    def _credit(self, session: Session, task: ComputeTask, assignment: TaskAssignment) -> float:
        """Pay one assignment. A second call for the same assignment pays nothing."""
        if assignment.verified:
            return 0.0

        reward = float(task.reward_credits)
        assignment.verified = True
        assignment.credits_awarded = reward
        # unique assignment_id: a second earning row aborts the transaction
        session.add(Earning(
            node_id=assignment.node_id,
            earned_amount=reward,
            earning_type="compute",
            task_id=task.id,
            assignment_id=assignment.id,
        ))

        node = session.get(Node, assignment.node_id, with_for_update=True)
        node.total_compute_credits += reward
        node.claimable_balance += reward
        node.total_earned += reward
        session.flush()
        return reward

    def _finalize(self, session: Session, task: ComputeTask, counts: Counter) -> None:
        """
        Close the task: write its result record and settle the stragglers.

        Once consensus is known, matching submissions that were not accepted
        at the time they arrived are credited. For tasks without an expected
        hash, submissions that disagreed with the consensus are penalized now,
        since they could not be judged earlier.
        """
        consensus_hash, matching, reached = self._consensus(task, counts)

        completed = session.execute(
            select(TaskAssignment)
            .where(
                TaskAssignment.task_id == task.id,
                TaskAssignment.status == AssignmentStatus.COMPLETED,
            )
            .order_by(TaskAssignment.completed_at, TaskAssignment.id)
        ).scalars().all()

        final_result = None
        if reached:
            for assignment in completed:
                if assignment.result_hash == consensus_hash:
                    if final_result is None:
                        final_result = assignment.result_data
                    if not assignment.verified:
                        self._credit(session, task, assignment)
                        self.trust.on_success(session, assignment.device_id, TRUST_REWARD_REGULAR)
                elif task.expected_output_hash is None:
                    self.trust.on_failure(session, assignment.device_id, TRUST_PENALTY_REGULAR)

        now = utcnow()
        task.status = TaskStatus.COMPLETED
        session.add(TaskResult(
            task_id=task.id,
            consensus_hash=consensus_hash,
            total_submissions=sum(counts.values()),
            matching_submissions=matching,
            consensus_reached=reached,
            final_result=final_result,
            verified_at=now if reached else None,
        ))
        session.flush()

        logger.info(f"Task {task.task_uuid} finalized: consensus={reached} "
                    f"({matching}/{sum(counts.values())} matching)")

    # -------------------------------------------------------------------------
    # Signatures
    # -------------------------------------------------------------------------

    def _check_signature(
        self,
        task_id: str,
        task_type: str,
        input_hash: str,
        expires_at: Optional[str],
        signature: Optional[str],
    ) -> None:
        if not self.require_signature:
            return
        manifest = {
            "task_id": task_id,
            "task_type": task_type,
            "input_hash": input_hash,
            "expires_at": expires_at,
        }
        if not signature or not verify_manifest(manifest, signature, self.manifest_secret):
            raise InvalidManifestSignature(task_id)

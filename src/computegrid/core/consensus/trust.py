"""
Trust Subsystem

Every node carries a bounded reputation score in [0, 100] that gates
admission to work. The score moves in small steps on verified successes and
in larger steps on failures; canary failures are the strongest signal and
three of them ban the node.

Two kinds of method live here:

- Session-bound mutators (on_success, on_failure, ban_if_threshold,
  record_canary_result) take the caller's Session so that trust changes commit
  or roll back together with the submission that caused them.
- Standalone readers and sweeps (score, get_trust_info, detect_anomalies,
  run_integrity_check) open their own short transaction.

Anomaly detection and the integrity sweep are advisory: they report, they
never ban.
"""

import logging
import statistics
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session, sessionmaker

from computegrid.core.economics.constants import (
    ANOMALY_MIN_SAMPLES,
    ANOMALY_WINDOW_HOURS,
    CANARY_BAN_REASON,
    CANARY_BAN_THRESHOLD,
    HIGH_CONFIDENCE_SAMPLES,
    INITIAL_TRUST_SCORE,
    INTEGRITY_BAN_SUCCESS_RATE,
    INTEGRITY_FLAG_CANARY_FAILURES,
    INTEGRITY_FLAG_SUCCESS_RATE,
    INTEGRITY_MIN_ASSIGNMENTS,
    INTEGRITY_TRUST_CEILING,
    LOW_SUCCESS_MIN_SAMPLES,
    LOW_SUCCESS_RATE,
    TIMING_STDDEV_FLOOR_MS,
    TRUST_PENALTY_CANARY,
    TRUST_PENALTY_REGULAR,
    TRUST_REWARD_CANARY,
    TRUST_REWARD_REGULAR,
    clamp_trust_score,
)
from computegrid.core.storage import (
    NodeTrust,
    TaskAssignment,
    insert_ignore,
    session_scope,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class AnomalyReport:
    """Advisory signal for one node over a trailing window."""
    device_id: str
    anomalies: List[Dict[str, Any]] = field(default_factory=list)
    confidence: str = "low"
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def suspicious(self) -> bool:
        return bool(self.anomalies)

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "suspicious": self.suspicious,
            "anomalies": self.anomalies,
            "confidence": self.confidence,
            "stats": self.stats,
        }


@dataclass
class IntegrityReport:
    checked_nodes: int = 0
    flagged: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def flagged_nodes(self) -> int:
        return len(self.flagged)

    def to_dict(self) -> dict:
        return {
            "checked_nodes": self.checked_nodes,
            "flagged_nodes": self.flagged_nodes,
            "flagged": self.flagged,
        }


class TrustManager:
    """
    Maintains NodeTrust rows.

    Usage:
        trust = TrustManager(session_factory)
        trust.score("device-1")              # 100.0 for a new node

        with session_scope(session_factory) as session:
            trust.on_failure(session, "device-1", TRUST_PENALTY_CANARY, canary=True)
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # =========================================================================
    # RECORD ACCESS
    # =========================================================================

    def get_or_create(self, session: Session, device_id: str, lock: bool = False) -> NodeTrust:
        """
        Fetch the trust row, creating it at the initial score on first contact.

        With lock=True the row is held FOR UPDATE until the caller's
        transaction ends, so concurrent updates to one node serialize.
        """
        insert_ignore(
            session,
            NodeTrust,
            {
                "device_id": device_id,
                "trust_score": INITIAL_TRUST_SCORE,
                "created_at": utcnow(),
                "updated_at": utcnow(),
            },
            conflict_columns=["device_id"],
        )
        stmt = select(NodeTrust).where(NodeTrust.device_id == device_id)
        if lock:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one()

    @staticmethod
    def effective_score(record: NodeTrust) -> float:
        if record.banned:
            return 0.0
        return clamp_trust_score(record.trust_score)

    def score(self, device_id: str) -> float:
        """Current bounded score; 0 for banned nodes, 100 for unseen ones."""
        with session_scope(self.session_factory) as session:
            return self.effective_score(self.get_or_create(session, device_id))

    # =========================================================================
    # MUTATORS (caller's transaction)
    # =========================================================================

    def on_success(
        self,
        session: Session,
        device_id: str,
        increment: float = TRUST_REWARD_REGULAR,
    ) -> NodeTrust:
        record = self.get_or_create(session, device_id, lock=True)
        record.successful_tasks += 1
        record.total_tasks_completed += 1
        record.trust_score = clamp_trust_score(record.trust_score + increment)
        record.updated_at = utcnow()
        session.flush()
        return record

    def on_failure(
        self,
        session: Session,
        device_id: str,
        magnitude: float = TRUST_PENALTY_REGULAR,
        canary: bool = False,
    ) -> NodeTrust:
        now = utcnow()
        record = self.get_or_create(session, device_id, lock=True)
        record.failed_tasks += 1
        record.total_tasks_completed += 1
        record.trust_score = clamp_trust_score(record.trust_score - magnitude)
        record.last_failure_at = now
        record.updated_at = now
        if canary:
            record.canary_failures += 1
        session.flush()

        logger.debug(f"Trust penalty for {device_id[:16]}: -{magnitude} "
                     f"(score={record.trust_score:.2f}, canary={canary})")
        self.ban_if_threshold(session, device_id, record)
        return record

    def ban_if_threshold(
        self,
        session: Session,
        device_id: str,
        record: Optional[NodeTrust] = None,
    ) -> bool:
        """
        Ban the node once its canary failures reach the threshold.

        Irreversible from inside the grid; unbanning is an administrative action.

        Returns:
            True if the node is banned after this call
        """
        if record is None:
            record = self.get_or_create(session, device_id, lock=True)
        if record.banned:
            return True
        if record.canary_failures < CANARY_BAN_THRESHOLD:
            return False

        now = utcnow()
        record.banned = True
        record.banned_at = now
        record.ban_reason = CANARY_BAN_REASON
        record.updated_at = now
        session.flush()
        logger.warning(f"Node banned: {device_id} - {CANARY_BAN_REASON} "
                       f"({record.canary_failures} canary failures)")
        return True

    def record_canary_result(self, session: Session, device_id: str, passed: bool) -> NodeTrust:
        if passed:
            return self.on_success(session, device_id, TRUST_REWARD_CANARY)
        return self.on_failure(session, device_id, TRUST_PENALTY_CANARY, canary=True)

    # =========================================================================
    # READERS
    # =========================================================================

    def get_trust_info(self, device_id: str) -> Dict[str, Any]:
        """Reputation summary. Unseen nodes get defaults and no row is created."""
        with session_scope(self.session_factory) as session:
            record = session.execute(
                select(NodeTrust).where(NodeTrust.device_id == device_id)
            ).scalar_one_or_none()

            if record is None:
                return {
                    "device_id": device_id,
                    "score": INITIAL_TRUST_SCORE,
                    "trust_score": INITIAL_TRUST_SCORE,
                    "total_tasks": 0,
                    "successful_tasks": 0,
                    "failed_tasks": 0,
                    "canary_failures": 0,
                    "banned": False,
                    "ban_reason": None,
                    "last_failure_at": None,
                    "is_new": True,
                }

            return {
                "device_id": device_id,
                "score": self.effective_score(record),
                "trust_score": record.trust_score,
                "total_tasks": record.total_tasks_completed,
                "successful_tasks": record.successful_tasks,
                "failed_tasks": record.failed_tasks,
                "canary_failures": record.canary_failures,
                "banned": record.banned,
                "ban_reason": record.ban_reason,
                "last_failure_at": record.last_failure_at.isoformat() if record.last_failure_at else None,
                "is_new": False,
            }

    def detect_anomalies(
        self,
        device_id: str,
        window_hours: float = ANOMALY_WINDOW_HOURS,
    ) -> AnomalyReport:
        """
        Look for cheating fingerprints in recently completed assignments.

        Flags:
        1. low_success_rate: fewer than half verified, over a meaningful sample
        2. suspiciously_consistent_timing: execution times with almost no
           spread, the signature of replayed or scripted answers
        """
        since = utcnow() - timedelta(hours=window_hours)
        stmt = select(TaskAssignment.execution_time_ms, TaskAssignment.verified).where(
            TaskAssignment.device_id == device_id,
            TaskAssignment.completed_at.is_not(None),
            TaskAssignment.completed_at > since,
        )
        with session_scope(self.session_factory) as session:
            rows = session.execute(stmt).all()

        report = AnomalyReport(device_id=device_id)
        total = len(rows)
        if total < ANOMALY_MIN_SAMPLES:
            report.stats = {"total_tasks": total}
            return report

        verified = sum(1 for _, ok in rows if ok)
        times = [ms for ms, _ in rows if ms is not None]
        success_rate = verified / total

        if success_rate < LOW_SUCCESS_RATE and total > LOW_SUCCESS_MIN_SAMPLES:
            report.anomalies.append({
                "type": "low_success_rate",
                "value": round(success_rate, 4),
                "threshold": LOW_SUCCESS_RATE,
            })

        stddev = statistics.stdev(times) if len(times) >= 2 else None
        if stddev is not None and stddev < TIMING_STDDEV_FLOOR_MS:
            report.anomalies.append({
                "type": "suspiciously_consistent_timing",
                "stddev": round(stddev, 3),
                "threshold": TIMING_STDDEV_FLOOR_MS,
            })

        report.confidence = "high" if total > HIGH_CONFIDENCE_SAMPLES else "medium"
        report.stats = {
            "avg_execution_time": round(statistics.fmean(times)) if times else None,
            "stddev_execution_time": round(stddev, 3) if stddev is not None else None,
            "success_rate": round(success_rate, 2),
            "total_tasks": total,
        }
        if report.suspicious:
            logger.info(f"Anomalies for {device_id[:16]}: {[a['type'] for a in report.anomalies]}")
        return report

    def run_integrity_check(self) -> IntegrityReport:
        """
        Offline sweep over low-trust, high-volume nodes.

        A node is flagged when its verified rate is poor or it has already
        failed canaries; the recommendation is `ban` for the worst offenders
        and `monitor` otherwise. Nothing is changed in the store.
        """
        total_assignments = func.count(TaskAssignment.id)
        verified_count = func.coalesce(func.sum(case((TaskAssignment.verified.is_(True), 1), else_=0)), 0)
        stmt = (
            select(
                NodeTrust.device_id,
                NodeTrust.trust_score,
                NodeTrust.canary_failures,
                total_assignments.label("total_assignments"),
                verified_count.label("verified_count"),
            )
            .join(TaskAssignment, TaskAssignment.device_id == NodeTrust.device_id, isouter=True)
            .where(NodeTrust.trust_score < INTEGRITY_TRUST_CEILING, NodeTrust.banned.is_(False))
            .group_by(NodeTrust.device_id, NodeTrust.trust_score, NodeTrust.canary_failures)
            .having(total_assignments > INTEGRITY_MIN_ASSIGNMENTS)
        )
        with session_scope(self.session_factory) as session:
            rows = session.execute(stmt).all()

        report = IntegrityReport(checked_nodes=len(rows))
        for row in rows:
            success_rate = row.verified_count / row.total_assignments
            if success_rate < INTEGRITY_FLAG_SUCCESS_RATE or row.canary_failures >= INTEGRITY_FLAG_CANARY_FAILURES:
                report.flagged.append({
                    "device_id": row.device_id,
                    "trust_score": float(row.trust_score),
                    "success_rate": round(success_rate, 2),
                    "canary_failures": row.canary_failures,
                    "recommendation": "ban" if success_rate < INTEGRITY_BAN_SUCCESS_RATE else "monitor",
                })

        logger.info(f"Integrity check: {report.checked_nodes} checked, {report.flagged_nodes} flagged")
        return report

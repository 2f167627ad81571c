"""
Tests for trust scoring, bans, anomaly detection and the integrity sweep.
"""
from datetime import timedelta

import pytest
from sqlalchemy import select

from computegrid.core.storage import (
    AssignmentStatus,
    ComputeTask,
    Node,
    NodeTrust,
    TaskAssignment,
    session_scope,
    utcnow,
)

from conftest import set_trust


@pytest.fixture
def trust(service):
    return service.trust


def seed_history(session_factory, device_id, times_ms, verified_flags, hours_ago=1):
    """Completed assignments for one node, each on its own task."""
    completed_at = utcnow() - timedelta(hours=hours_ago)
    with session_scope(session_factory) as session:
        node = session.execute(select(Node).where(Node.device_id == device_id)).scalar_one_or_none()
        if node is None:
            node = Node(device_id=device_id)
            session.add(node)
            session.flush()
        for i, (ms, ok) in enumerate(zip(times_ms, verified_flags)):
            task = ComputeTask(
                task_uuid=f"task_hist_{device_id}_{i}",
                task_type="hash_compute",
                difficulty=1,
                input_hash="0" * 64,
                input_data={},
                reward_credits=0.3,
                expires_at=utcnow() + timedelta(hours=1),
            )
            session.add(task)
            session.flush()
            session.add(TaskAssignment(
                task_id=task.id,
                node_id=node.id,
                device_id=device_id,
                status=AssignmentStatus.COMPLETED,
                completed_at=completed_at,
                execution_time_ms=ms,
                verified=ok,
            ))


class TestScoreBounds:
    def test_new_node_starts_at_100(self, trust):
        assert trust.score("fresh-node") == 100.0

    def test_success_is_capped_at_100(self, trust, session_factory):
        with session_scope(session_factory) as session:
            for _ in range(5):
                record = trust.on_success(session, "node-a")
        assert record.trust_score == 100.0
        assert record.successful_tasks == 5
        assert record.total_tasks_completed == 5

    def test_failures_floor_at_zero(self, trust, session_factory):
        with session_scope(session_factory) as session:
            for _ in range(30):
                record = trust.on_failure(session, "node-b", 5.0)
        assert record.trust_score == 0.0
        assert record.failed_tasks == 30
        assert record.last_failure_at is not None

    def test_score_moves_by_configured_steps(self, trust, session_factory):
        set_trust(session_factory, "node-c", 60.0)
        with session_scope(session_factory) as session:
            trust.on_success(session, "node-c", 0.5)
            trust.on_failure(session, "node-c", 5.0)
        assert trust.score("node-c") == 55.5

    def test_rollback_discards_trust_change(self, trust, session_factory):
        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as session:
                trust.on_failure(session, "node-d", 5.0)
                raise RuntimeError("submission failed later")
        assert trust.score("node-d") == 100.0


class TestCanaryBan:
    def test_two_failures_do_not_ban(self, trust, session_factory):
        with session_scope(session_factory) as session:
            trust.record_canary_result(session, "node-e", passed=False)
            record = trust.record_canary_result(session, "node-e", passed=False)
        assert record.canary_failures == 2
        assert record.banned is False
        assert trust.score("node-e") == 80.0

    def test_third_failure_bans(self, trust, session_factory):
        with session_scope(session_factory) as session:
            for _ in range(3):
                record = trust.record_canary_result(session, "node-f", passed=False)
        assert record.banned is True
        assert record.ban_reason == "Multiple canary failures"
        assert record.banned_at is not None
        # stored score is untouched; the effective score is zero
        assert record.trust_score == 70.0
        assert trust.score("node-f") == 0.0

    def test_regular_failures_never_ban(self, trust, session_factory):
        with session_scope(session_factory) as session:
            for _ in range(10):
                record = trust.on_failure(session, "node-g", 5.0)
        assert record.banned is False
        assert record.canary_failures == 0

    def test_passing_canary_after_ban_keeps_ban(self, trust, session_factory):
        with session_scope(session_factory) as session:
            for _ in range(3):
                trust.record_canary_result(session, "node-h", passed=False)
            record = trust.record_canary_result(session, "node-h", passed=True)
        assert record.banned is True
        assert trust.score("node-h") == 0.0


class TestTrustInfo:
    def test_unknown_node_defaults_without_row(self, trust, session_factory):
        info = trust.get_trust_info("ghost")
        assert info["is_new"] is True
        assert info["score"] == 100.0
        assert info["banned"] is False
        with session_scope(session_factory) as session:
            assert session.execute(
                select(NodeTrust).where(NodeTrust.device_id == "ghost")
            ).scalar_one_or_none() is None

    def test_known_node(self, trust, session_factory):
        with session_scope(session_factory) as session:
            trust.on_success(session, "node-i")
            trust.record_canary_result(session, "node-i", passed=False)
        info = trust.get_trust_info("node-i")
        assert info["is_new"] is False
        assert info["total_tasks"] == 2
        assert info["successful_tasks"] == 1
        assert info["failed_tasks"] == 1
        assert info["canary_failures"] == 1
        assert info["score"] == 90.0
        assert info["last_failure_at"] is not None


class TestAnomalyDetection:
    def test_too_few_samples(self, trust, session_factory):
        seed_history(session_factory, "node-j", [100] * 9, [False] * 9)
        report = trust.detect_anomalies("node-j")
        assert report.anomalies == []
        assert report.confidence == "low"
        assert report.to_dict()["suspicious"] is False

    def test_low_success_rate(self, trust, session_factory):
        times = [100 + 37 * i for i in range(25)]
        seed_history(session_factory, "node-k", times, [i < 5 for i in range(25)])
        report = trust.detect_anomalies("node-k")
        assert [a["type"] for a in report.anomalies] == ["low_success_rate"]
        assert report.suspicious is True
        assert report.to_dict()["suspicious"] is True
        assert report.confidence == "medium"
        assert report.stats["success_rate"] == 0.2

    def test_low_success_rate_needs_more_than_twenty(self, trust, session_factory):
        times = [100 + 37 * i for i in range(20)]
        seed_history(session_factory, "node-l", times, [False] * 20)
        assert trust.detect_anomalies("node-l").anomalies == []

    def test_suspiciously_consistent_timing(self, trust, session_factory):
        seed_history(session_factory, "node-m", [500, 501, 502] * 20, [True] * 60)
        report = trust.detect_anomalies("node-m")
        assert [a["type"] for a in report.anomalies] == ["suspiciously_consistent_timing"]
        assert report.confidence == "high"

    def test_window_excludes_old_history(self, trust, session_factory):
        seed_history(session_factory, "node-n", [500] * 30, [False] * 30, hours_ago=48)
        report = trust.detect_anomalies("node-n")
        assert report.anomalies == []
        assert report.stats["total_tasks"] == 0


class TestIntegrityCheck:
    def test_flags_and_recommends(self, trust, session_factory):
        # cheater: 12 assignments, 1 verified, low trust
        seed_history(session_factory, "cheater", [100 + i for i in range(12)], [i == 0 for i in range(12)])
        set_trust(session_factory, "cheater", 40.0)
        # borderline: 25% success, monitor only
        seed_history(session_factory, "shaky", [100 + i for i in range(12)], [i < 3 for i in range(12)])
        set_trust(session_factory, "shaky", 60.0)
        # canary failures but good success rate
        seed_history(session_factory, "tester", [100 + i for i in range(12)], [True] * 12)
        set_trust(session_factory, "tester", 65.0, canary_failures=2)
        # high trust: not swept at all
        seed_history(session_factory, "honest", [100 + i for i in range(12)], [False] * 12)
        set_trust(session_factory, "honest", 90.0)
        # too little history
        seed_history(session_factory, "newbie", [100] * 5, [False] * 5)
        set_trust(session_factory, "newbie", 30.0)

        report = trust.run_integrity_check()

        assert report.checked_nodes == 3
        flagged = {f["device_id"]: f for f in report.flagged}
        assert set(flagged) == {"cheater", "shaky", "tester"}
        assert flagged["cheater"]["recommendation"] == "ban"
        assert flagged["shaky"]["recommendation"] == "monitor"
        assert flagged["tester"]["recommendation"] == "monitor"

    def test_sweep_does_not_ban(self, trust, session_factory):
        seed_history(session_factory, "cheater2", [100 + i for i in range(12)], [False] * 12)
        set_trust(session_factory, "cheater2", 10.0)
        trust.run_integrity_check()
        assert trust.get_trust_info("cheater2")["banned"] is False

    def test_banned_nodes_are_skipped(self, trust, session_factory):
        seed_history(session_factory, "gone", [100 + i for i in range(12)], [False] * 12)
        set_trust(session_factory, "gone", 10.0, canary_failures=3)
        with session_scope(session_factory) as session:
            trust.ban_if_threshold(session, "gone")
        assert trust.run_integrity_check().checked_nodes == 0

"""
Tests for stale assignment reaping and task expiry.
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from computegrid.core.errors import AssignmentNotFound
from computegrid.core.storage import ComputeTask, TaskAssignment, session_scope, utcnow

from conftest import PLAUSIBLE_MS, get_assignments, get_task


def age_assignments(session_factory, seconds):
    with session_scope(session_factory) as session:
        session.execute(
            update(TaskAssignment).values(assigned_at=utcnow() - timedelta(seconds=seconds))
        )


class TestReapStale:
    def test_fresh_assignments_survive(self, service, register_nodes, make_task, session_factory):
        task_id = make_task("hash_compute")
        (device,) = register_nodes(1)
        service.request_task(device)

        assert service.reaper.reap_stale() == 0
        (assignment,) = get_assignments(session_factory, task_id)
        assert assignment.status == "assigned"

    def test_stale_assignment_times_out_and_task_reopens(self, service, register_nodes, make_task, session_factory):
        # hash difficulty 1: 3s budget + 30s grace
        task_id = make_task("hash_compute", redundancy=1)
        first, second = register_nodes(2)
        service.request_task(first)
        assert service.request_task(second) is None

        age_assignments(session_factory, 60)
        assert service.reaper.reap_stale() == 1

        (assignment,) = get_assignments(session_factory, task_id)
        assert assignment.status == "timeout"
        assert assignment.error_message
        assert get_task(session_factory, task_id)["status"] == "pending"

        # the freed slot is dispatchable again
        assert service.request_task(second)["task_id"] == task_id

    def test_timeout_does_not_penalize(self, service, register_nodes, make_task, session_factory):
        make_task("hash_compute")
        (device,) = register_nodes(1)
        service.request_task(device)
        age_assignments(session_factory, 60)
        service.reaper.reap_stale()

        info = service.get_trust_info(device)
        assert info["score"] == 100.0
        assert info["failed_tasks"] == 0

    def test_budget_is_per_task(self, service, register_nodes, make_task, session_factory):
        # matrix difficulty 3: 15s budget; 40s old is still inside budget + grace
        task_id = make_task("matrix_mult", difficulty=3)
        (device,) = register_nodes(1)
        service.request_task(device)

        age_assignments(session_factory, 40)
        assert service.reaper.reap_stale() == 0
        age_assignments(session_factory, 50)
        assert service.reaper.reap_stale() == 1
        assert get_assignments(session_factory, task_id)[0].status == "timeout"

    def test_processing_assignments_are_reaped_too(self, service, register_nodes, make_task, session_factory):
        task_id = make_task("hash_compute")
        (device,) = register_nodes(1)
        service.request_task(device)
        service.start_task(device, task_id)

        age_assignments(session_factory, 60)
        assert service.reaper.reap_stale() == 1

    def test_task_with_other_live_assignments_stays_assigned(
        self, service, register_nodes, make_task, session_factory
    ):
        task_id = make_task("hash_compute", redundancy=3)
        first, second = register_nodes(2)
        service.request_task(first)
        age_assignments(session_factory, 60)
        service.request_task(second)

        assert service.reaper.reap_stale() == 1
        assert get_task(session_factory, task_id)["status"] == "assigned"

    def test_late_submission_after_timeout_is_rejected(
        self, service, register_nodes, make_task, session_factory
    ):
        task_id = make_task("hash_compute")
        spec = make_task.specs[task_id]
        (device,) = register_nodes(1)
        service.request_task(device)
        age_assignments(session_factory, 60)
        service.reaper.reap_stale()

        with pytest.raises(AssignmentNotFound):
            service.submit_result(device, task_id, spec.expected_result, PLAUSIBLE_MS["hash_compute"])


class TestExpireTasks:
    def test_only_unassigned_past_deadline(self, service, make_task, session_factory):
        stale = make_task("hash_compute")
        taken = make_task("hash_compute")
        fresh = make_task("hash_compute")

        with session_scope(session_factory) as session:
            session.execute(
                update(ComputeTask)
                .where(ComputeTask.task_uuid.in_([stale, taken]))
                .values(expires_at=utcnow() - timedelta(minutes=1))
            )
            session.execute(
                update(ComputeTask).where(ComputeTask.task_uuid == taken).values(status="assigned")
            )

        assert service.reaper.expire_tasks() == 1
        assert get_task(session_factory, stale)["status"] == "expired"
        assert get_task(session_factory, taken)["status"] == "assigned"
        assert get_task(session_factory, fresh)["status"] == "pending"


class TestMaintain:
    def test_maintain_runs_every_sweep(self, service):
        summary = service.maintain()
        assert summary == {
            "assignments_reaped": 0,
            "tasks_expired": 0,
            "tasks_created": 10,
            "canaries_created": 4,
        }
        assert service.maintain()["tasks_created"] == 0


class TestExpiredTaskWithResults:
    RESULT = {"label": 2, "scores": [0.1, 0.2, 0.7]}

    def test_freed_slots_still_dispatch_after_deadline(
        self, service, register_nodes, make_task, session_factory
    ):
        task_id = make_task("ml_inference", redundancy=3)
        early, *silent = register_nodes(3, gpu=True)
        for device in [early, *silent]:
            assert service.request_task(device)["task_id"] == task_id
        service.submit_result(early, task_id, self.RESULT, PLAUSIBLE_MS["ml_inference"])

        assert service.reaper.reap_stale(now=utcnow() + timedelta(hours=2)) == 2
        with session_scope(session_factory) as session:
            session.execute(
                update(ComputeTask)
                .where(ComputeTask.task_uuid == task_id)
                .values(expires_at=utcnow() - timedelta(minutes=1))
            )
        assert service.reaper.expire_tasks() == 0
        assert get_task(session_factory, task_id)["status"] == "assigned"

        late = register_nodes(2, gpu=True, prefix="late")
        for device in late:
            assert service.request_task(device)["task_id"] == task_id
            service.submit_result(device, task_id, self.RESULT, PLAUSIBLE_MS["ml_inference"])

        task = get_task(session_factory, task_id)
        assert task["status"] == "completed"
        assert task["result"]["consensus_reached"] is True
        assert task["result"]["total_submissions"] == 3
        (first,) = get_assignments(session_factory, task_id, device_id=early)
        assert first.verified is True

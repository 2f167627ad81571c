"""
Assignment Reaper

Nodes disappear mid-task. Without a sweep their assignments would occupy a
redundancy slot forever and the task could never reach consensus.

reap_stale() times out assignments that outlived the task's execution budget
plus a grace period; the freed slot becomes dispatchable again. expire_tasks()
retires tasks nobody picked up before their deadline.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import exists, select, update
from sqlalchemy.orm import sessionmaker

from computegrid.core.economics.constants import REAPER_GRACE_SECONDS
from computegrid.core.storage import (
    AssignmentStatus,
    ComputeTask,
    TaskAssignment,
    TaskStatus,
    session_scope,
    utcnow,
)

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Assignment timed out"


class AssignmentReaper:
    def __init__(self, session_factory: sessionmaker, grace_seconds: int = REAPER_GRACE_SECONDS):
        self.session_factory = session_factory
        self.grace_seconds = grace_seconds

    def reap_stale(self, now: Optional[datetime] = None) -> int:
        """
        Time out assignments past assigned_at + max_execution_time + grace.

        Timeouts do not touch trust. A task left without any counted
        assignment goes back to pending.

        Returns:
            Number of assignments timed out
        """
        now = now or utcnow()
        grace = timedelta(seconds=self.grace_seconds)

        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(TaskAssignment, ComputeTask.max_execution_time_ms)
                .join(ComputeTask, TaskAssignment.task_id == ComputeTask.id)
                .where(
                    TaskAssignment.status.in_(AssignmentStatus.ACTIVE),
                    # cheap prefilter; the exact per-task deadline is checked below
                    TaskAssignment.assigned_at < now - grace,
                )
                .with_for_update(skip_locked=True, of=TaskAssignment)
            ).all()

            touched_tasks = set()
            reaped = 0
            for assignment, max_ms in rows:
                deadline = assignment.assigned_at + timedelta(milliseconds=max_ms) + grace
                if deadline >= now:
                    continue
                assignment.status = AssignmentStatus.TIMEOUT
                assignment.error_message = TIMEOUT_MESSAGE
                touched_tasks.add(assignment.task_id)
                reaped += 1
            session.flush()

            if touched_tasks:
                still_counted = exists().where(
                    TaskAssignment.task_id == ComputeTask.id,
                    TaskAssignment.status.in_(AssignmentStatus.COUNTED),
                )
                session.execute(
                    update(ComputeTask)
                    .where(
                        ComputeTask.id.in_(sorted(touched_tasks)),
                        ComputeTask.status == TaskStatus.ASSIGNED,
                        ~still_counted,
                    )
                    .values(status=TaskStatus.PENDING)
                    .execution_options(synchronize_session=False)
                )

        if reaped:
            logger.info(f"Reaped {reaped} stale assignments across {len(touched_tasks)} tasks")
        return reaped

    def expire_tasks(self, now: Optional[datetime] = None) -> int:
        """
        Mark pending tasks past their deadline as expired.

        Assigned tasks are left alone: they hold submissions and keep
        dispatching their freed slots until they finalize.

        Returns:
            Number of tasks expired
        """
        now = now or utcnow()
        with session_scope(self.session_factory) as session:
            result = session.execute(
                update(ComputeTask)
                .where(ComputeTask.status == TaskStatus.PENDING, ComputeTask.expires_at <= now)
                .values(status=TaskStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount or 0

        if expired:
            logger.info(f"Expired {expired} unassigned tasks")
        return expired

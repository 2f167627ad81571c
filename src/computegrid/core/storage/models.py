from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from computegrid.core.economics.constants import (
    DEFAULT_TASK_PRIORITY,
    INITIAL_TRUST_SCORE,
    TASK_REDUNDANCY,
)
from computegrid.core.storage.database import Base, utcnow


class TaskStatus:
    PENDING = "pending"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    EXPIRED = "expired"

    # Still accepting new assignments
    DISPATCHABLE = (PENDING, ASSIGNED)


class AssignmentStatus:
    ASSIGNED = "assigned"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    ACTIVE = (ASSIGNED, PROCESSING)
    # Occupies one of the task's redundancy slots
    COUNTED = (ASSIGNED, PROCESSING, COMPLETED)


class Node(Base):
    """A registered device. Credits accrue here; settlement happens off-system."""
    __tablename__ = "nodes"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String(64), unique=True, index=True, nullable=False)
    wallet_address = Column(String(64), nullable=True)

    total_compute_credits = Column(Float, default=0.0, nullable=False)
    claimable_balance = Column(Float, default=0.0, nullable=False)
    total_earned = Column(Float, default=0.0, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    last_seen_at = Column(DateTime, default=utcnow)

    capabilities = relationship("NodeCapabilities", back_populates="node", uselist=False)


class NodeCapabilities(Base):
    """Benchmark and hardware profile declared by the node (untrusted)."""
    __tablename__ = "node_capabilities"

    id = Column(Integer, primary_key=True)
    node_id = Column(Integer, ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False)
    device_id = Column(String(64), unique=True, index=True, nullable=False)

    cpu_cores = Column(Integer, default=1)
    cpu_benchmark_score = Column(Float, default=0.0)
    gpu_available = Column(Boolean, default=False)
    gpu_vendor = Column(String(100), nullable=True)
    gpu_renderer = Column(String(200), nullable=True)
    webgpu_supported = Column(Boolean, default=False)
    wasm_supported = Column(Boolean, default=True)
    memory_gb = Column(Float, default=0.0)
    estimated_tflops = Column(Float, default=0.0)

    last_benchmark_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    node = relationship("Node", back_populates="capabilities")


class ComputeTask(Base):
    """
    A unit of work fanned out to `redundancy_count` independent nodes.

    expected_output_hash is only set for deterministic task types; inference
    tasks fall back to majority consensus.
    """
    __tablename__ = "compute_tasks"
    __table_args__ = (
        CheckConstraint("redundancy_count >= 1", name="ck_compute_tasks_redundancy"),
        CheckConstraint("difficulty >= 1", name="ck_compute_tasks_difficulty"),
        Index("ix_compute_tasks_dispatch", "status", "priority", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    task_uuid = Column(String(64), unique=True, index=True, nullable=False)
    task_type = Column(String(50), index=True, nullable=False)
    difficulty = Column(Integer, default=1, nullable=False)
    priority = Column(Integer, default=DEFAULT_TASK_PRIORITY, nullable=False)

    input_hash = Column(String(128), nullable=False)
    expected_output_hash = Column(String(128), nullable=True)
    input_data = Column(JSON, nullable=False)
    model_url = Column(String(500), nullable=True)
    model_hash = Column(String(128), nullable=True)

    reward_credits = Column(Float, nullable=False)
    max_execution_time_ms = Column(Integer, default=30000, nullable=False)
    requires_gpu = Column(Boolean, default=False, nullable=False)
    redundancy_count = Column(Integer, default=TASK_REDUNDANCY, nullable=False)
    status = Column(String(20), default=TaskStatus.PENDING, index=True, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    assignments = relationship("TaskAssignment", back_populates="task")
    result = relationship("TaskResult", back_populates="task", uselist=False)


class TaskAssignment(Base):
    """One node's attempt at one task."""
    __tablename__ = "task_assignments"
    __table_args__ = (
        # at most one active assignment per (task, node)
        Index(
            "uq_task_assignments_active",
            "task_id",
            "device_id",
            unique=True,
            postgresql_where=text("status IN ('assigned', 'processing')"),
            sqlite_where=text("status IN ('assigned', 'processing')"),
        ),
        Index("ix_task_assignments_task_status", "task_id", "status"),
    )

    id = Column(Integer, primary_key=True)
    task_id = Column(Integer, ForeignKey("compute_tasks.id", ondelete="CASCADE"), nullable=False)
    node_id = Column(Integer, ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False)
    device_id = Column(String(64), index=True, nullable=False)

    assigned_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    result_hash = Column(String(128), nullable=True)
    result_data = Column(JSON, nullable=True)
    execution_time_ms = Column(Integer, nullable=True)

    status = Column(String(20), default=AssignmentStatus.ASSIGNED, index=True, nullable=False)
    verified = Column(Boolean, default=False, nullable=False)
    credits_awarded = Column(Float, default=0.0, nullable=False)
    error_message = Column(Text, nullable=True)

    task = relationship("ComputeTask", back_populates="assignments")


class TaskResult(Base):
    """Finalized consensus outcome. Written exactly once per task."""
    __tablename__ = "task_results"

    id = Column(Integer, primary_key=True)
    task_id = Column(Integer, ForeignKey("compute_tasks.id", ondelete="CASCADE"), unique=True, nullable=False)
    consensus_hash = Column(String(128), nullable=True)
    total_submissions = Column(Integer, default=0, nullable=False)
    matching_submissions = Column(Integer, default=0, nullable=False)
    consensus_reached = Column(Boolean, default=False, nullable=False)
    final_result = Column(JSON, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    task = relationship("ComputeTask", back_populates="result")


class Earning(Base):
    """Append-only credit log. One row per paid assignment, never more."""
    __tablename__ = "earnings"

    id = Column(Integer, primary_key=True)
    node_id = Column(Integer, ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False)
    earned_amount = Column(Float, nullable=False)
    earning_type = Column(String(30), default="compute", nullable=False)
    task_id = Column(Integer, ForeignKey("compute_tasks.id"), nullable=True)
    assignment_id = Column(Integer, ForeignKey("task_assignments.id"), unique=True, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class CanaryTask(Base):
    """A check task with a known answer. Immutable once inserted."""
    __tablename__ = "canary_tasks"

    id = Column(Integer, primary_key=True)
    task_uuid = Column(String(64), unique=True, index=True, nullable=False)
    task_type = Column(String(50), index=True, nullable=False)
    requires_gpu = Column(Boolean, default=False, nullable=False)
    input_data = Column(JSON, nullable=False)
    input_hash = Column(String(128), nullable=False)
    known_output_hash = Column(String(128), nullable=False)
    known_result = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class NodeTrust(Base):
    """
    Reputation record, created lazily on first contact.

    trust_score is clamped to [0, 100] by every writer. banned is terminal for
    dispatch until cleared by an administrator.
    """
    __tablename__ = "node_trust"
    __table_args__ = (
        CheckConstraint("trust_score >= 0 AND trust_score <= 100", name="ck_node_trust_bounds"),
    )

    id = Column(Integer, primary_key=True)
    device_id = Column(String(64), unique=True, index=True, nullable=False)
    trust_score = Column(Float, default=INITIAL_TRUST_SCORE, nullable=False)
    total_tasks_completed = Column(Integer, default=0, nullable=False)
    successful_tasks = Column(Integer, default=0, nullable=False)
    failed_tasks = Column(Integer, default=0, nullable=False)
    canary_failures = Column(Integer, default=0, nullable=False)
    last_failure_at = Column(DateTime, nullable=True)
    banned = Column(Boolean, default=False, nullable=False)
    banned_at = Column(DateTime, nullable=True)
    ban_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

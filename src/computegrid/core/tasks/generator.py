"""
Task Generator

Synthesizes work for the grid. Deterministic task types are solved here, at
generation time, so the verifier can compare submissions against a stored
expected-output hash without trusting anyone. Inference tasks carry no
expected hash and are verified by majority consensus instead.

Canary tasks are small deterministic instances whose result is stored in
full; they are served to nodes at random to test honesty directly.
"""

import logging
import random
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from computegrid.core.economics.constants import (
    ALL_TASK_TYPES,
    CANARY_POOL_MIN_PER_TYPE,
    DEFAULT_TASK_PRIORITY,
    DETERMINISTIC_TASK_TYPES,
    GPU_DIFFICULTY_THRESHOLD,
    MAX_POOL_DIFFICULTY,
    MIN_DIFFICULTY,
    POOL_TASK_TYPES,
    TASK_POOL_MIN_PER_TYPE,
    TASK_REDUNDANCY,
    TASK_TTL_SECONDS,
    TASK_TYPE_HASH,
    TASK_TYPE_MATRIX,
    TASK_TYPE_ML,
    get_max_execution_ms,
    get_task_reward,
)
from computegrid.core.errors import UnsupportedCanaryType
from computegrid.core.integrity import canary_id_for, canonical_hash, generate_task_id, sha256_hex
from computegrid.core.storage import (
    CanaryTask,
    ComputeTask,
    TaskStatus,
    insert_ignore,
    session_scope,
    utcnow,
)
from computegrid.core.tasks.kernels import (
    deterministic_matrix,
    iterate_hash,
    multiply_matrices,
    random_tensor,
)

logger = logging.getLogger(__name__)

# Inference manifest
ML_MODEL_NAME = "mobilenet_v2_quantized"
ML_MODEL_URL = "/models/mobilenet_v2_quant.onnx"
ML_INPUT_SIZE = 224

# Canary shapes: cheap enough to never dent a node's throughput
CANARY_MATRIX_SIZE = 4
CANARY_HASH_BYTES = 32
CANARY_BASE_ITERATIONS = 100


@dataclass
class TaskSpec:
    """A generated task before it is persisted."""
    task_uuid: str
    task_type: str
    difficulty: int
    input_data: Dict[str, Any]
    input_hash: str
    expected_output_hash: Optional[str]
    reward_credits: float
    max_execution_time_ms: int
    requires_gpu: bool
    model_url: Optional[str] = None
    model_hash: Optional[str] = None
    expected_result: Any = field(default=None, repr=False)

    def to_row(
        self,
        redundancy: int,
        expires_at: datetime,
        priority: int = DEFAULT_TASK_PRIORITY,
    ) -> ComputeTask:
        return ComputeTask(
            task_uuid=self.task_uuid,
            task_type=self.task_type,
            difficulty=self.difficulty,
            priority=priority,
            input_hash=self.input_hash,
            expected_output_hash=self.expected_output_hash,
            input_data=self.input_data,
            model_url=self.model_url,
            model_hash=self.model_hash,
            reward_credits=self.reward_credits,
            max_execution_time_ms=self.max_execution_time_ms,
            requires_gpu=self.requires_gpu,
            redundancy_count=redundancy,
            status=TaskStatus.PENDING,
            expires_at=expires_at,
        )


@dataclass
class CanarySpec:
    task_uuid: str
    task_type: str
    requires_gpu: bool
    input_data: Dict[str, Any]
    input_hash: str
    known_result: Any
    known_output_hash: str


def _random_seed() -> int:
    return secrets.randbits(32)


def _check_difficulty(difficulty: int) -> None:
    if not isinstance(difficulty, int) or difficulty < MIN_DIFFICULTY:
        raise ValueError(f"Difficulty must be a positive integer, got {difficulty!r}")


# =============================================================================
# PURE GENERATION
# =============================================================================

def generate_matrix_task(difficulty: int = 1, seed: Optional[int] = None) -> TaskSpec:
    """
    Square matrix product of size 8 + 4*difficulty.

    The two operands come from seeds `seed` and `seed + 1`, so the manifest is
    reproducible from the seed alone.
    """
    _check_difficulty(difficulty)
    seed = _random_seed() if seed is None else seed
    size = 8 + difficulty * 4

    matrix_a = deterministic_matrix(seed, size, size)
    matrix_b = deterministic_matrix(seed + 1, size, size)
    input_data = {
        "type": TASK_TYPE_MATRIX,
        "matrixA": matrix_a,
        "matrixB": matrix_b,
        "size": size,
        "seed": seed,
    }
    expected = multiply_matrices(matrix_a, matrix_b)

    return TaskSpec(
        task_uuid=generate_task_id(),
        task_type=TASK_TYPE_MATRIX,
        difficulty=difficulty,
        input_data=input_data,
        input_hash=sha256_hex(input_data),
        expected_output_hash=canonical_hash(expected),
        reward_credits=get_task_reward(TASK_TYPE_MATRIX, difficulty),
        max_execution_time_ms=get_max_execution_ms(TASK_TYPE_MATRIX, difficulty),
        requires_gpu=difficulty > GPU_DIFFICULTY_THRESHOLD,
        expected_result=expected,
    )


def generate_hash_task(difficulty: int = 1, data: Optional[str] = None) -> TaskSpec:
    """Iterated SHA-256 over 64*difficulty random bytes, 1000*difficulty rounds."""
    _check_difficulty(difficulty)
    iterations = 1000 * difficulty
    data = secrets.token_hex(64 * difficulty) if data is None else data

    input_data = {
        "type": TASK_TYPE_HASH,
        "data": data,
        "iterations": iterations,
        "algorithm": "sha256",
    }
    expected = {"hash": iterate_hash(data, iterations)}

    return TaskSpec(
        task_uuid=generate_task_id(),
        task_type=TASK_TYPE_HASH,
        difficulty=difficulty,
        input_data=input_data,
        input_hash=sha256_hex(input_data),
        expected_output_hash=canonical_hash(expected),
        reward_credits=get_task_reward(TASK_TYPE_HASH, difficulty),
        max_execution_time_ms=get_max_execution_ms(TASK_TYPE_HASH, difficulty),
        requires_gpu=False,
        expected_result=expected,
    )


def generate_ml_inference_task(difficulty: int = 1, seed: Optional[int] = None) -> TaskSpec:
    """Inference manifest. No server-side answer: verified by consensus only."""
    _check_difficulty(difficulty)
    seed = _random_seed() if seed is None else seed
    shape = [1, 3, ML_INPUT_SIZE, ML_INPUT_SIZE]
    model_hash = sha256_hex(ML_MODEL_URL)

    input_data = {
        "type": TASK_TYPE_ML,
        "model": ML_MODEL_NAME,
        "model_url": ML_MODEL_URL,
        "model_hash": model_hash,
        "input_shape": shape,
        "input_data": random_tensor(seed, shape),
        "seed": seed,
    }

    return TaskSpec(
        task_uuid=generate_task_id(),
        task_type=TASK_TYPE_ML,
        difficulty=difficulty,
        input_data=input_data,
        input_hash=sha256_hex({"seed": seed, "model": ML_MODEL_NAME}),
        expected_output_hash=None,
        reward_credits=get_task_reward(TASK_TYPE_ML, difficulty),
        max_execution_time_ms=get_max_execution_ms(TASK_TYPE_ML, difficulty),
        requires_gpu=True,
        model_url=ML_MODEL_URL,
        model_hash=model_hash,
    )


_GENERATORS = {
    TASK_TYPE_MATRIX: generate_matrix_task,
    TASK_TYPE_HASH: generate_hash_task,
    TASK_TYPE_ML: generate_ml_inference_task,
}


def generate_task(task_type: str, difficulty: int = 1) -> TaskSpec:
    try:
        generator = _GENERATORS[task_type]
    except KeyError:
        raise ValueError(f"Unknown task type: {task_type}") from None
    return generator(difficulty)


def generate_canary(task_type: str, seed: Optional[int] = None) -> CanarySpec:
    """
    Build a canary with its true result.

    Only deterministic types can be canaries; anything else raises
    UnsupportedCanaryType rather than silently substituting another type.
    """
    if task_type not in DETERMINISTIC_TASK_TYPES:
        raise UnsupportedCanaryType(task_type)
    seed = _random_seed() if seed is None else seed

    if task_type == TASK_TYPE_MATRIX:
        input_data = {
            "matrixA": deterministic_matrix(seed, CANARY_MATRIX_SIZE, CANARY_MATRIX_SIZE),
            "matrixB": deterministic_matrix(seed + 1, CANARY_MATRIX_SIZE, CANARY_MATRIX_SIZE),
            "size": CANARY_MATRIX_SIZE,
            "seed": seed,
        }
        known_result = multiply_matrices(input_data["matrixA"], input_data["matrixB"])
    else:
        input_data = {
            "data": secrets.token_hex(CANARY_HASH_BYTES),
            "iterations": CANARY_BASE_ITERATIONS + (seed % 100),
            "algorithm": "sha256",
            "seed": seed,
        }
        known_result = {"hash": iterate_hash(input_data["data"], input_data["iterations"])}

    input_hash = sha256_hex(input_data)
    return CanarySpec(
        task_uuid=canary_id_for(input_hash),
        task_type=task_type,
        # matrix canaries only go to WebGPU-capable nodes
        requires_gpu=task_type == TASK_TYPE_MATRIX,
        input_data=input_data,
        input_hash=input_hash,
        known_result=known_result,
        known_output_hash=canonical_hash(known_result),
    )


# =============================================================================
# PERSISTENCE
# =============================================================================

class TaskGenerator:
    """
    Creates and stores tasks and canaries.

    Every write is insert-only, so pool top-ups can run concurrently from
    several schedulers without coordination.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        redundancy: int = TASK_REDUNDANCY,
        ttl_seconds: int = TASK_TTL_SECONDS,
        rng: Optional[random.Random] = None,
    ):
        if redundancy < 1:
            raise ValueError(f"Redundancy target must be >= 1, got {redundancy}")
        if ttl_seconds <= 0:
            raise ValueError(f"Task TTL must be positive, got {ttl_seconds}")
        self.session_factory = session_factory
        self.redundancy = redundancy
        self.ttl_seconds = ttl_seconds
        self.rng = rng or random.Random()

    def create_and_store_task(
        self,
        task_type: str,
        difficulty: int = 1,
        priority: int = DEFAULT_TASK_PRIORITY,
        redundancy: Optional[int] = None,
    ) -> TaskSpec:
        spec = generate_task(task_type, difficulty)
        self.store_task(spec, priority=priority, redundancy=redundancy)
        return spec

    def store_task(
        self,
        spec: TaskSpec,
        priority: int = DEFAULT_TASK_PRIORITY,
        redundancy: Optional[int] = None,
    ) -> None:
        redundancy = self.redundancy if redundancy is None else redundancy
        if redundancy < 1:
            raise ValueError(f"Redundancy target must be >= 1, got {redundancy}")
        expires_at = utcnow() + timedelta(seconds=self.ttl_seconds)
        with session_scope(self.session_factory) as session:
            session.add(spec.to_row(redundancy, expires_at, priority))
        logger.debug(f"Stored {spec.task_type} task {spec.task_uuid} (difficulty={spec.difficulty})")

    def pending_counts(self) -> Dict[str, int]:
        """Pending, unexpired tasks per type."""
        stmt = (
            select(ComputeTask.task_type, func.count(ComputeTask.id))
            .where(ComputeTask.status == TaskStatus.PENDING, ComputeTask.expires_at > utcnow())
            .group_by(ComputeTask.task_type)
        )
        with session_scope(self.session_factory) as session:
            return {task_type: count for task_type, count in session.execute(stmt).all()}

    def ensure_task_pool(
        self,
        min_per_type: int = TASK_POOL_MIN_PER_TYPE,
        task_types: Iterable[str] = POOL_TASK_TYPES,
    ) -> int:
        """
        Top up the pending pool so each type has at least `min_per_type` tasks.

        Returns:
            Number of tasks inserted
        """
        counts = self.pending_counts()
        expires_at = utcnow() + timedelta(seconds=self.ttl_seconds)
        created = 0

        with session_scope(self.session_factory) as session:
            for task_type in task_types:
                if task_type not in ALL_TASK_TYPES:
                    raise ValueError(f"Unknown task type: {task_type}")
                needed = max(0, min_per_type - counts.get(task_type, 0))
                for _ in range(needed):
                    difficulty = self.rng.randint(MIN_DIFFICULTY, MAX_POOL_DIFFICULTY)
                    spec = generate_task(task_type, difficulty)
                    session.add(spec.to_row(self.redundancy, expires_at))
                    created += 1

        if created:
            logger.info(f"Generated {created} new tasks")
        return created

    def create_canary_task(self, task_type: str, seed: Optional[int] = None) -> CanarySpec:
        """Store a canary. Re-creating an identical canary is a no-op."""
        spec = generate_canary(task_type, seed)
        with session_scope(self.session_factory) as session:
            insert_ignore(
                session,
                CanaryTask,
                {
                    "task_uuid": spec.task_uuid,
                    "task_type": spec.task_type,
                    "requires_gpu": spec.requires_gpu,
                    "input_data": spec.input_data,
                    "input_hash": spec.input_hash,
                    "known_output_hash": spec.known_output_hash,
                    "known_result": spec.known_result,
                    "created_at": utcnow(),
                },
                conflict_columns=["task_uuid"],
            )
        return spec

    def ensure_canary_pool(self, min_per_type: int = CANARY_POOL_MIN_PER_TYPE) -> int:
        stmt = select(CanaryTask.task_type, func.count(CanaryTask.id)).group_by(CanaryTask.task_type)
        with session_scope(self.session_factory) as session:
            counts = {task_type: count for task_type, count in session.execute(stmt).all()}

        created = 0
        for task_type in DETERMINISTIC_TASK_TYPES:
            for _ in range(max(0, min_per_type - counts.get(task_type, 0))):
                self.create_canary_task(task_type)
                created += 1
        if created:
            logger.info(f"Generated {created} new canary tasks")
        return created

"""
Compute Grid Economics - Centralized Configuration

This module defines ALL reward, trust and plausibility constants for the grid.
Values are documented here and should be referenced from here, not hardcoded
elsewhere.

=============================================================================
DESIGN PRINCIPLES
=============================================================================

1. PAY FOR VERIFIED WORK: Credits are only released for results that pass
   deterministic or majority verification.

2. TRUST IS EARNED SLOWLY, LOST QUICKLY: Successes nudge the score up by a
   fraction of a point, canary failures take a large bite.

3. CANARIES ARE GROUND TRUTH: Three canary failures ban a node outright.

4. PHYSICS FIRST: Submissions that claim to be faster than any real device
   are rejected before they can touch consensus state.

=============================================================================
"""

import math
from typing import Tuple

# =============================================================================
# TASK TYPES
# =============================================================================

TASK_TYPE_MATRIX = "matrix_mult"
TASK_TYPE_HASH = "hash_compute"
TASK_TYPE_ML = "ml_inference"

ALL_TASK_TYPES = (TASK_TYPE_MATRIX, TASK_TYPE_HASH, TASK_TYPE_ML)

# Types whose result can be computed server-side at generation time
DETERMINISTIC_TASK_TYPES = (TASK_TYPE_MATRIX, TASK_TYPE_HASH)

# Types kept topped-up in the pending pool by the periodic generator.
# Inference manifests are only created on demand (no browser ONNX runtime yet).
POOL_TASK_TYPES = (TASK_TYPE_MATRIX, TASK_TYPE_HASH)

# =============================================================================
# REWARD RATES
# =============================================================================

CREDITS_PER_MATRIX_TASK = 0.5       # per difficulty level
CREDITS_PER_HASH_TASK = 0.3         # per difficulty level
CREDITS_PER_ML_TASK = 2.0           # per difficulty level

TASK_REWARDS = {
    TASK_TYPE_MATRIX: CREDITS_PER_MATRIX_TASK,
    TASK_TYPE_HASH: CREDITS_PER_HASH_TASK,
    TASK_TYPE_ML: CREDITS_PER_ML_TASK,
}

# Canaries test honesty; they never pay
CANARY_REWARD = 0.0

# =============================================================================
# TASK POOL
# =============================================================================

TASK_REDUNDANCY = 3                 # Nodes that must compute each task
DEFAULT_TASK_PRIORITY = 5           # Higher is dispatched first
TASK_TTL_SECONDS = 3600             # Unassigned tasks expire after 1 hour
TASK_POOL_MIN_PER_TYPE = 100        # Floor kept by ensure_task_pool()
CANARY_POOL_MIN_PER_TYPE = 10       # Floor kept by ensure_canary_pool()
MIN_DIFFICULTY = 1
MAX_POOL_DIFFICULTY = 3             # Pool top-up draws difficulty in 1..3
GPU_DIFFICULTY_THRESHOLD = 3        # Matrix tasks above this need a GPU

# Per-type wall clock budget, multiplied by difficulty
MAX_EXECUTION_MS_PER_DIFFICULTY = {
    TASK_TYPE_MATRIX: 5000,
    TASK_TYPE_HASH: 3000,
    TASK_TYPE_ML: 15000,
}

# Extra slack before a silent assignment is reaped
REAPER_GRACE_SECONDS = 30

# Claim attempts before giving up when candidates fill up under contention
MAX_CLAIM_ATTEMPTS = 5

# =============================================================================
# TRUST
# =============================================================================

INITIAL_TRUST_SCORE = 100.0
MIN_TRUST_BOUND = 0.0
MAX_TRUST_BOUND = 100.0

MIN_TRUST_SCORE = 50.0              # Admission floor for receiving work
CANARY_TASK_FREQUENCY = 0.05        # 5% of requests get a canary

TRUST_REWARD_REGULAR = 0.5          # Verified regular task
TRUST_REWARD_CANARY = 1.0           # Passed canary
TRUST_PENALTY_REGULAR = 5.0         # Result disagrees with expected/consensus
TRUST_PENALTY_CANARY = 10.0         # Failed canary

CANARY_BAN_THRESHOLD = 3            # Canary failures before a ban
CANARY_BAN_REASON = "Multiple canary failures"

# =============================================================================
# EXECUTION TIME PLAUSIBILITY
# =============================================================================
# (min_ms, max_ms_per_difficulty). The minimum is absolute: no real device
# finishes faster. The maximum scales with difficulty.

EXECUTION_TIME_RANGES = {
    TASK_TYPE_MATRIX: (10, 5000),
    TASK_TYPE_HASH: (5, 3000),
    TASK_TYPE_ML: (100, 15000),
}
DEFAULT_EXECUTION_TIME_RANGE = (10, 30000)  # Unknown types, not scaled

# =============================================================================
# ANOMALY DETECTION & INTEGRITY SWEEP
# =============================================================================

ANOMALY_WINDOW_HOURS = 24
ANOMALY_MIN_SAMPLES = 10            # Below this, no signal at all
LOW_SUCCESS_MIN_SAMPLES = 20        # Success-rate check needs more data
LOW_SUCCESS_RATE = 0.5
TIMING_STDDEV_FLOOR_MS = 10.0       # Real hardware jitters more than this
HIGH_CONFIDENCE_SAMPLES = 50

INTEGRITY_TRUST_CEILING = 70.0      # Only sweep nodes below this score
INTEGRITY_MIN_ASSIGNMENTS = 10
INTEGRITY_FLAG_SUCCESS_RATE = 0.3
INTEGRITY_FLAG_CANARY_FAILURES = 2
INTEGRITY_BAN_SUCCESS_RATE = 0.2


def get_task_reward(task_type: str, difficulty: int) -> float:
    """
    Credits paid for one verified result.

    Examples:
        >>> get_task_reward("matrix_mult", 2)
        1.0
        >>> get_task_reward("hash_compute", 3)
        0.9
    """
    if task_type not in TASK_REWARDS:
        raise ValueError(f"Unknown task type: {task_type}")
    return round(TASK_REWARDS[task_type] * difficulty, 6)


def get_max_execution_ms(task_type: str, difficulty: int) -> int:
    """Wall clock budget advertised in the manifest."""
    if task_type not in MAX_EXECUTION_MS_PER_DIFFICULTY:
        raise ValueError(f"Unknown task type: {task_type}")
    return MAX_EXECUTION_MS_PER_DIFFICULTY[task_type] * difficulty


def get_execution_time_range(task_type: str, difficulty: int) -> Tuple[int, int]:
    """
    Plausible (min_ms, max_ms) window for a task.

    Examples:
        >>> get_execution_time_range("matrix_mult", 2)
        (10, 10000)
        >>> get_execution_time_range("unknown", 5)
        (10, 30000)
    """
    if task_type not in EXECUTION_TIME_RANGES:
        return DEFAULT_EXECUTION_TIME_RANGE
    min_ms, max_per_difficulty = EXECUTION_TIME_RANGES[task_type]
    return min_ms, max_per_difficulty * max(1, difficulty)


def clamp_trust_score(score: float) -> float:
    """Keep a trust score inside [MIN_TRUST_BOUND, MAX_TRUST_BOUND]."""
    return max(MIN_TRUST_BOUND, min(MAX_TRUST_BOUND, score))


def consensus_quorum(redundancy: int) -> int:
    """
    Matching submissions required for majority consensus.

    Examples:
        >>> consensus_quorum(3)
        2
        >>> consensus_quorum(4)
        2
        >>> consensus_quorum(1)
        1
    """
    return max(1, math.ceil(redundancy / 2))

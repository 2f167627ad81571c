"""
Reference compute kernels.

These are the exact computations a node is asked to perform. The server runs
them at generation time to know the right answer for deterministic task types,
and the reference client runs them to produce submissions. Arithmetic mirrors
the browser engine (IEEE doubles, half-up rounding) so both sides hash alike.
"""

import hashlib
import math
from typing import Callable, List, Sequence

Matrix = List[List[float]]

# Linear congruential generator parameters shared with the browser engine
LCG_MULTIPLIER = 9301
LCG_INCREMENT = 49297
LCG_MODULUS = 233280


def seeded_random(seed: int) -> Callable[[], float]:
    """Deterministic [0, 1) stream for a given seed."""
    state = seed

    def _next() -> float:
        nonlocal state
        state = (state * LCG_MULTIPLIER + LCG_INCREMENT) % LCG_MODULUS
        return state / LCG_MODULUS

    return _next


def round_half_up(value: float, places: int = 3) -> float:
    """Math.round() semantics: halves round toward +infinity."""
    scale = 10 ** places
    return math.floor(value * scale + 0.5) / scale


def deterministic_matrix(seed: int, rows: int, cols: int) -> Matrix:
    """Matrix of one-decimal values in [0, 10) drawn from seeded_random(seed)."""
    rng = seeded_random(seed)
    return [[math.floor(rng() * 100) / 10 for _ in range(cols)] for _ in range(rows)]


def multiply_matrices(a: Sequence[Sequence[float]], b: Sequence[Sequence[float]]) -> Matrix:
    """Naive product with each cell rounded half-up to three decimals."""
    if not a or not b:
        raise ValueError("Cannot multiply empty matrices")
    cols_a = len(a[0])
    if cols_a != len(b):
        raise ValueError(f"Shape mismatch: {len(a)}x{cols_a} @ {len(b)}x{len(b[0])}")
    cols_b = len(b[0])

    result = []
    for row in a:
        out_row = []
        for j in range(cols_b):
            total = 0.0
            for k in range(cols_a):
                total += row[k] * b[k][j]
            out_row.append(round_half_up(total))
        result.append(out_row)
    return result


def iterate_hash(data: str, iterations: int) -> str:
    """Apply SHA-256 to the running hex digest `iterations` times."""
    digest = data
    for _ in range(iterations):
        digest = hashlib.sha256(digest.encode("utf-8")).hexdigest()
    return digest


def random_tensor(seed: int, shape: Sequence[int], limit: int = 1000) -> List[int]:
    """Flat uint8 tensor prefix; only the first `limit` values ship in the manifest."""
    rng = seeded_random(seed)
    total = math.prod(shape)
    return [math.floor(rng() * 256) for _ in range(min(total, limit))]

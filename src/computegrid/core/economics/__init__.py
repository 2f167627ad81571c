"""
Compute grid economics: rewards, trust bounds and plausibility windows.

All values live in constants.py; import from here.
"""

from computegrid.core.economics.constants import *  # noqa: F401,F403
from computegrid.core.economics.constants import (
    get_task_reward,
    get_max_execution_ms,
    get_execution_time_range,
    clamp_trust_score,
    consensus_quorum,
)

__all__ = [
    "get_task_reward",
    "get_max_execution_ms",
    "get_execution_time_range",
    "clamp_trust_score",
    "consensus_quorum",
]

"""
Compute Grid Consensus Module

Decides which results are trusted and which nodes keep receiving work:

1. **ConsensusVerifier**: plausibility checks, expected-hash and majority
   verification, exactly-once credit and task finalization
2. **TrustManager**: bounded reputation scores, canary bans, anomaly reports
   and the offline integrity sweep

Verification rules:
===================
- Deterministic tasks (matrix_mult, hash_compute): result must equal the hash
  computed at generation time and be among the most common submissions
- Inference tasks: unique most common hash with at least ceil(redundancy/2)
  matching submissions
- Canaries: compared to a known answer; three failures ban the node
"""

from computegrid.core.consensus.trust import (
    AnomalyReport,
    IntegrityReport,
    TrustManager,
)
from computegrid.core.consensus.verifier import (
    ConsensusVerifier,
    ExecutionTimeVerifier,
    SubmissionOutcome,
)

__all__ = [
    "AnomalyReport",
    "ConsensusVerifier",
    "ExecutionTimeVerifier",
    "IntegrityReport",
    "SubmissionOutcome",
    "TrustManager",
]

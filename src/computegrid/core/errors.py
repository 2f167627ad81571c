"""
Exceptions raised by the dispatch, verification and trust subsystems.

Every failure a caller can act on has its own class so that the HTTP adapter
(and any other transport) can tell "stop asking" apart from "try again later":

    GridError
    ├── AdmissionError          node may not receive work (not retried)
    │   ├── UnknownNode
    │   ├── NodeBanned
    │   └── TrustTooLow
    ├── NotFoundError           stale or forged task references
    │   ├── TaskNotFound
    │   ├── CanaryNotFound
    │   ├── AssignmentNotFound
    │   └── DuplicateSubmission
    ├── PlausibilityError       rejected before any state is touched
    │   └── ImplausibleExecutionTime
    ├── InvalidManifestSignature
    └── UnsupportedCanaryType
"""

from typing import Optional


class GridError(Exception):
    """Base class for all compute grid errors."""

    code = "grid_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


# =============================================================================
# ADMISSION
# =============================================================================

class AdmissionError(GridError):
    """The node is not allowed to receive work."""

    code = "admission_denied"


class UnknownNode(AdmissionError):
    code = "device_not_registered"

    def __init__(self, device_id: str):
        super().__init__(f"Device not registered: {device_id}")
        self.device_id = device_id


class TrustTooLow(AdmissionError):
    code = "trust_too_low"

    def __init__(self, device_id: str, trust_score: float):
        super().__init__(f"Trust score too low: {trust_score:.2f}")
        self.device_id = device_id
        self.trust_score = trust_score

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["trust_score"] = self.trust_score
        return data


class NodeBanned(AdmissionError):
    """Banned nodes share the trust_too_low code: their effective score is zero."""

    code = "trust_too_low"

    def __init__(self, device_id: str, reason: Optional[str] = None):
        super().__init__(f"Node is banned: {reason or 'no reason recorded'}")
        self.device_id = device_id
        self.reason = reason
        self.trust_score = 0.0

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["trust_score"] = self.trust_score
        data["banned"] = True
        return data


# =============================================================================
# NOT FOUND
# =============================================================================

class NotFoundError(GridError):
    code = "not_found"


class TaskNotFound(NotFoundError):
    code = "task_not_found"

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class CanaryNotFound(NotFoundError):
    code = "canary_not_found"

    def __init__(self, task_id: str):
        super().__init__(f"Canary task not found: {task_id}")
        self.task_id = task_id


class AssignmentNotFound(NotFoundError):
    code = "assignment_not_found"

    def __init__(self, device_id: str, task_id: str):
        super().__init__(f"Assignment not found for {device_id} on {task_id}")
        self.device_id = device_id
        self.task_id = task_id


class DuplicateSubmission(NotFoundError):
    """The node already submitted a result for this task."""

    code = "duplicate_submission"

    def __init__(self, device_id: str, task_id: str):
        super().__init__(f"Result already submitted by {device_id} for {task_id}")
        self.device_id = device_id
        self.task_id = task_id


# =============================================================================
# PLAUSIBILITY / INTEGRITY
# =============================================================================

class PlausibilityError(GridError):
    code = "implausible_submission"


class ImplausibleExecutionTime(PlausibilityError):
    code = "implausible_execution_time"

    def __init__(self, reason: str, execution_time_ms: float):
        super().__init__(reason)
        self.reason = reason
        self.execution_time_ms = execution_time_ms


class InvalidManifestSignature(GridError):
    code = "invalid_signature"

    def __init__(self, task_id: str):
        super().__init__(f"Manifest signature mismatch for {task_id}")
        self.task_id = task_id


class UnsupportedCanaryType(GridError, ValueError):
    code = "unsupported_canary_type"

    def __init__(self, task_type: str):
        super().__init__(f"Canary not supported for: {task_type}")
        self.task_type = task_type

"""
Compute Grid Client

Reference worker that polls a grid server for tasks, executes them locally
and submits the results.

The polling loop is an explicit state machine; each call to step() performs
exactly one transition:

    idle -> requesting -> executing -> submitting -> idle
                 |             |            |
                 +--> backoff <+------------+   (no work / transport error)
                 +--> stopped                    (admission refused)

Usage:
    client = TaskClient(ClientConfig(server_url="http://localhost:8000"))
    client.register()
    client.run()
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

import requests

from computegrid.core.economics.constants import TASK_TYPE_HASH, TASK_TYPE_MATRIX, get_execution_time_range
from computegrid.core.tasks.kernels import iterate_hash, multiply_matrices

logger = logging.getLogger(__name__)

API_PREFIX = "/api/compute"


class ClientState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    EXECUTING = "executing"
    SUBMITTING = "submitting"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass
class ClientConfig:
    server_url: str = "http://localhost:8000"
    device_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    wallet_address: Optional[str] = None
    capabilities: Dict[str, Any] = field(default_factory=lambda: {"wasm_supported": True})
    idle_backoff_seconds: float = 5.0       # server had no work
    error_backoff_seconds: float = 2.0      # first retry after a failure, doubled each time
    max_backoff_seconds: float = 120.0
    request_timeout: float = 10.0
    # executions under the plausibility floor wait out the gap and report floor + margin
    pace_to_floor: bool = True
    execution_floor_margin_ms: float = 5.0

    def execution_floor_ms(self, task_type: str, difficulty: int = 1) -> float:
        return get_execution_time_range(task_type, difficulty)[0] + self.execution_floor_margin_ms


class LocalComputeEngine:
    """Executes the deterministic task types with the same kernels the server uses."""

    def supports(self, task_type: str) -> bool:
        return task_type in (TASK_TYPE_MATRIX, TASK_TYPE_HASH)

    def execute(self, task: Dict[str, Any]) -> Any:
        data = task["input_data"]
        if task["task_type"] == TASK_TYPE_MATRIX:
            return multiply_matrices(data["matrixA"], data["matrixB"])
        if task["task_type"] == TASK_TYPE_HASH:
            return {"hash": iterate_hash(data["data"], data["iterations"])}
        raise ValueError(f"Unsupported task type: {task['task_type']}")


class TaskClient:
    def __init__(
        self,
        config: ClientConfig,
        engine: Optional[LocalComputeEngine] = None,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.config = config
        self.engine = engine or LocalComputeEngine()
        self.http = http or requests.Session()
        self.sleep = sleep
        self.clock = clock

        self.state = ClientState.IDLE
        self.current_task: Optional[Dict[str, Any]] = None
        self.pending_result: Optional[Any] = None
        self.pending_execution_ms: Optional[float] = None
        self.resume_state = ClientState.REQUESTING
        self.backoff_delay = 0.0
        self.consecutive_errors = 0
        self.stop_reason: Optional[str] = None

        self.tasks_completed = 0
        self.tasks_verified = 0
        self.credits_earned = 0.0

    def _url(self, path: str) -> str:
        return f"{self.config.server_url.rstrip('/')}{API_PREFIX}{path}"

    def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        return self.http.post(self._url(path), json=payload, timeout=self.config.request_timeout)

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(self) -> None:
        """Register the device and its capabilities. Raises on HTTP errors."""
        resp = self._post("/nodes", {
            "device_id": self.config.device_id,
            "wallet_address": self.config.wallet_address,
        })
        resp.raise_for_status()
        if self.config.capabilities:
            resp = self._post("/capabilities", {
                "device_id": self.config.device_id,
                "capabilities": self.config.capabilities,
            })
            resp.raise_for_status()
        logger.info(f"Registered device {self.config.device_id[:16]} with {self.config.server_url}")

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def step(self) -> ClientState:
        handler = {
            ClientState.IDLE: self._on_idle,
            ClientState.REQUESTING: self._on_requesting,
            ClientState.EXECUTING: self._on_executing,
            ClientState.SUBMITTING: self._on_submitting,
            ClientState.BACKOFF: self._on_backoff,
            ClientState.STOPPED: lambda: ClientState.STOPPED,
        }[self.state]
        self.state = handler()
        return self.state

    def run(self, max_steps: Optional[int] = None) -> None:
        steps = 0
        while self.state != ClientState.STOPPED:
            if max_steps is not None and steps >= max_steps:
                break
            self.step()
            steps += 1

    def stop(self, reason: str = "stopped by caller") -> None:
        self.stop_reason = reason
        self.state = ClientState.STOPPED

    def _on_idle(self) -> ClientState:
        self.current_task = None
        self.pending_result = None
        self.pending_execution_ms = None
        return ClientState.REQUESTING

    def _on_requesting(self) -> ClientState:
        try:
            resp = self._post("/task/request", {
                "device_id": self.config.device_id,
                "capabilities": self.config.capabilities or None,
            })
        except requests.RequestException as e:
            logger.warning(f"Task request failed: {e}")
            return self._error_backoff(ClientState.REQUESTING)

        if resp.status_code == 403:
            return self._stopped(resp)
        if resp.status_code != 200:
            logger.warning(f"Task request returned {resp.status_code}: {resp.text[:200]}")
            return self._error_backoff(ClientState.REQUESTING)

        self.consecutive_errors = 0
        task = resp.json().get("task")
        if not task:
            self.backoff_delay = self.config.idle_backoff_seconds
            self.resume_state = ClientState.REQUESTING
            return ClientState.BACKOFF

        self.current_task = task
        return ClientState.EXECUTING

    def _on_executing(self) -> ClientState:
        task = self.current_task
        if not self.engine.supports(task["task_type"]):
            # left to the server's reaper
            logger.info(f"Skipping unsupported task type {task['task_type']} ({task['task_id']})")
            return ClientState.IDLE

        if not task.get("is_canary"):
            try:
                resp = self._post("/task/start", {"device_id": self.config.device_id, "task_id": task["task_id"]})
                if resp.status_code != 200:
                    logger.debug(f"Start notification for {task['task_id']} returned {resp.status_code}")
            except requests.RequestException as e:
                logger.debug(f"Start notification for {task['task_id']} failed: {e}")

        start = self.clock()
        try:
            result = self.engine.execute(task)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Execution of {task['task_id']} failed: {e}")
            return ClientState.IDLE
        elapsed_ms = (self.clock() - start) * 1000

        if self.config.pace_to_floor:
            floor_ms = self.config.execution_floor_ms(task["task_type"], task.get("difficulty", 1))
            if elapsed_ms < floor_ms:
                self.sleep((floor_ms - elapsed_ms) / 1000)
                elapsed_ms = floor_ms

        self.pending_result = result
        self.pending_execution_ms = elapsed_ms
        return ClientState.SUBMITTING

    def _on_submitting(self) -> ClientState:
        task = self.current_task
        try:
            resp = self._post("/task/submit", {
                "device_id": self.config.device_id,
                "task_id": task["task_id"],
                "result": self.pending_result,
                "execution_time_ms": self.pending_execution_ms,
                "signature": task.get("signature"),
            })
        except requests.RequestException as e:
            logger.warning(f"Submission of {task['task_id']} failed: {e}")
            return self._error_backoff(ClientState.SUBMITTING)

        if resp.status_code == 403:
            return self._stopped(resp)
        if resp.status_code >= 500:
            return self._error_backoff(ClientState.SUBMITTING)
        if resp.status_code != 200:
            # rejected (implausible, duplicate, unknown): retrying cannot help
            logger.warning(f"Submission of {task['task_id']} rejected ({resp.status_code}): {resp.text[:200]}")
            self.consecutive_errors = 0
            return ClientState.IDLE

        self.consecutive_errors = 0
        outcome = resp.json()
        self.tasks_completed += 1
        if outcome.get("verified"):
            self.tasks_verified += 1
        self.credits_earned += outcome.get("credits_awarded", 0.0)
        logger.info(f"Submitted {task['task_id']}: verified={outcome.get('verified')} "
                    f"credits={outcome.get('credits_awarded', 0.0)}")
        return ClientState.IDLE

    def _on_backoff(self) -> ClientState:
        self.sleep(self.backoff_delay)
        return self.resume_state

    def _error_backoff(self, resume: ClientState) -> ClientState:
        self.consecutive_errors += 1
        self.backoff_delay = min(
            self.config.error_backoff_seconds * (2 ** (self.consecutive_errors - 1)),
            self.config.max_backoff_seconds,
        )
        self.resume_state = resume
        return ClientState.BACKOFF

    def _stopped(self, resp: requests.Response) -> ClientState:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        self.stop_reason = body.get("code") or body.get("error") or "admission refused"
        logger.warning(f"Server refused work for {self.config.device_id[:16]}: {self.stop_reason}")
        return ClientState.STOPPED

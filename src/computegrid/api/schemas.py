from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class NodeRegister(BaseModel):
    """Request to register (or re-register) a device"""
    device_id: str = Field(..., min_length=1, max_length=64)
    wallet_address: Optional[str] = Field(None, max_length=64)


class NodeInfo(BaseModel):
    device_id: str
    wallet_address: Optional[str] = None
    total_compute_credits: float = 0.0
    claimable_balance: float = 0.0


class Capabilities(BaseModel):
    """Self-reported hardware profile. Untrusted; only filters what is offered."""
    cpu_cores: Optional[int] = Field(None, ge=1)
    cpu_benchmark_score: Optional[float] = None
    gpu_available: Optional[bool] = None
    gpu_vendor: Optional[str] = None
    gpu_renderer: Optional[str] = None
    webgpu_supported: Optional[bool] = None
    wasm_supported: Optional[bool] = None
    memory_gb: Optional[float] = Field(None, ge=0)
    estimated_tflops: Optional[float] = Field(None, ge=0)


class CapabilitiesRegister(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=64)
    capabilities: Capabilities


class TaskRequest(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=64)
    capabilities: Optional[Capabilities] = None  # falls back to the registered profile


class TaskManifest(BaseModel):
    """What a node receives. Never carries an expected answer."""
    task_id: str
    task_type: str
    input_data: Dict[str, Any]
    input_hash: str
    difficulty: int
    reward_credits: float
    max_execution_time_ms: int
    requires_gpu: bool
    expires_at: Optional[str] = None
    signature: str
    is_canary: bool = False
    model_url: Optional[str] = None
    model_hash: Optional[str] = None


class TaskResponse(BaseModel):
    task: Optional[TaskManifest] = None
    message: Optional[str] = None


class TaskStart(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=64)
    task_id: str


class TaskSubmit(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=64)
    task_id: str
    result: Any
    execution_time_ms: float = Field(..., ge=0)
    signature: Optional[str] = None


class SubmitResponse(BaseModel):
    success: bool
    verified: bool
    credits_awarded: float
    result_hash: str
    is_canary: bool


class TrustInfo(BaseModel):
    device_id: str
    score: float
    trust_score: float
    total_tasks: int
    successful_tasks: int
    failed_tasks: int
    canary_failures: int
    banned: bool
    ban_reason: Optional[str] = None
    last_failure_at: Optional[str] = None
    is_new: bool


class QueueStatRow(BaseModel):
    task_type: str
    status: str
    count: int
    avg_difficulty: Optional[float] = None


class QueueStats(BaseModel):
    tasks: List[QueueStatRow]
    canaries: Dict[str, int]


class ErrorResponse(BaseModel):
    error: str
    code: str
    trust_score: Optional[float] = None
    banned: Optional[bool] = None

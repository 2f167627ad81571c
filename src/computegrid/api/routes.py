"""
Compute grid HTTP routes.

Thin adapter over GridService: validate the body, call the service, shape
the response. Error translation lives in computegrid.api.errors.
"""

import logging

from fastapi import APIRouter, Depends, Request

from computegrid.api import schemas
from computegrid.api.errors import ERROR_RESPONSES
from computegrid.service import GridService
from computegrid.version import __version__

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/compute", tags=["compute"])


def get_service(request: Request) -> GridService:
    return request.app.state.service


@router.get("/health")
def health(service: GridService = Depends(get_service)):
    return {"status": "ok", "version": __version__}


@router.post("/nodes", response_model=schemas.NodeInfo, responses=ERROR_RESPONSES)
def register_node(body: schemas.NodeRegister, service: GridService = Depends(get_service)):
    return service.register_node(body.device_id, body.wallet_address)


@router.post("/capabilities", responses=ERROR_RESPONSES)
def register_capabilities(body: schemas.CapabilitiesRegister, service: GridService = Depends(get_service)):
    return service.register_capabilities(body.device_id, body.capabilities.model_dump(exclude_none=True))


@router.post("/task/request", response_model=schemas.TaskResponse, responses=ERROR_RESPONSES)
def request_task(body: schemas.TaskRequest, service: GridService = Depends(get_service)):
    """
    Get the next task for a device.

    403 when the device may not receive work; `task: null` when it may but
    nothing is available right now.
    """
    capabilities = body.capabilities.model_dump(exclude_none=True) if body.capabilities else None
    manifest = service.request_task(body.device_id, capabilities)
    if manifest is None:
        return {"task": None, "message": "No tasks available"}
    return {"task": manifest}


@router.post("/task/start", responses=ERROR_RESPONSES)
def start_task(body: schemas.TaskStart, service: GridService = Depends(get_service)):
    return service.start_task(body.device_id, body.task_id)


@router.post("/task/submit", response_model=schemas.SubmitResponse, responses=ERROR_RESPONSES)
def submit_result(body: schemas.TaskSubmit, service: GridService = Depends(get_service)):
    return service.submit_result(
        body.device_id,
        body.task_id,
        body.result,
        body.execution_time_ms,
        signature=body.signature,
    )


@router.get("/trust/{device_id}", response_model=schemas.TrustInfo)
def trust_info(device_id: str, service: GridService = Depends(get_service)):
    return service.get_trust_info(device_id)


@router.get("/queue/stats", response_model=schemas.QueueStats)
def queue_stats(service: GridService = Depends(get_service)):
    return service.queue_stats()

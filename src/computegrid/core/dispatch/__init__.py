from computegrid.core.dispatch.dispatcher import DispatchedTask, TaskDispatcher, supports_gpu
from computegrid.core.dispatch.reaper import AssignmentReaper

__all__ = [
    "AssignmentReaper",
    "DispatchedTask",
    "TaskDispatcher",
    "supports_gpu",
]

from computegrid.core.tasks.generator import (
    CanarySpec,
    TaskGenerator,
    TaskSpec,
    generate_canary,
    generate_hash_task,
    generate_matrix_task,
    generate_ml_inference_task,
    generate_task,
)

__all__ = [
    "CanarySpec",
    "TaskGenerator",
    "TaskSpec",
    "generate_canary",
    "generate_hash_task",
    "generate_matrix_task",
    "generate_ml_inference_task",
    "generate_task",
]

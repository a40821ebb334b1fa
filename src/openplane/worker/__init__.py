from openplane.worker.client import WorkerToolRunner, default_worker_command
from openplane.worker.protocol import (
    WorkerExecutionError,
    WorkerProtocolError,
    WorkerRequest,
    WorkerRequestType,
    WorkerResponse,
    WorkerStartupConfig,
)

__all__ = [
    "WorkerExecutionError",
    "WorkerProtocolError",
    "WorkerRequest",
    "WorkerRequestType",
    "WorkerResponse",
    "WorkerStartupConfig",
    "WorkerToolRunner",
    "default_worker_command",
]

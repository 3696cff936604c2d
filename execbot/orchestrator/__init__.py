"""
Orchestrator package: per-instrument workers and their supervisor.
"""

from execbot.orchestrator.supervisor import (
    InstrumentWorker,
    SupervisorConfig,
    WorkerConfig,
    WorkerSupervisor,
    WorkerTickResult,
)

__all__ = [
    "InstrumentWorker",
    "SupervisorConfig",
    "WorkerConfig",
    "WorkerSupervisor",
    "WorkerTickResult",
]

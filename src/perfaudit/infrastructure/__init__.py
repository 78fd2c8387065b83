"""
Infrastructure Package.

Provides admission control for analysis jobs: bounded concurrency,
per-URL cooldown and a FIFO wait queue.
"""

from .job_queue import (
    AdmissionController,
    AdmissionResult,
    Admitted,
    Queued,
    Rejected,
    QueueTransition,
    QueueMetrics,
)

__all__ = [
    "AdmissionController",
    "AdmissionResult",
    "Admitted",
    "Queued",
    "Rejected",
    "QueueTransition",
    "QueueMetrics",
]

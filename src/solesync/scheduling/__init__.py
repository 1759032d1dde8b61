"""Scheduling: hourly budgets, the job queue, the scheduler, and workers."""

from solesync.scheduling.budget import BudgetManager, next_window, window_for
from solesync.scheduling.queue import SyncQueue
from solesync.scheduling.scheduler import ClaimResult, SyncScheduler, derive_overall
from solesync.scheduling.worker import JobOutcome, JobResult, Worker, WorkerPool, load_clients

__all__ = [
    "BudgetManager",
    "ClaimResult",
    "JobOutcome",
    "JobResult",
    "SyncQueue",
    "SyncScheduler",
    "Worker",
    "WorkerPool",
    "derive_overall",
    "load_clients",
    "next_window",
    "window_for",
]

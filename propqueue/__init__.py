"""
PropQueue - durable queue for identity propagation changes

Records account enable/disable and password changes as files in a locked
queue directory and drains them through an external worker program.
"""

__version__ = "1.0.0"
__author__ = "PropQueue Team"

from .config import QueueConfig
from .entry import Action, ActionClass, DisplayRow, EntryName, QueueEntry, System
from .errors import (
    ConfigurationError, PropQueueError, QueueFullError, ValidationError, WorkerFailure,
)
from .lock import QueueLock
from .storage import PurgeSummary, QueueStorage
from .worker import Processor, ProcessResult, ProcessSummary, WorkerResult, WorkerRunner

__all__ = [
    "QueueConfig",
    "Action",
    "ActionClass",
    "DisplayRow",
    "EntryName",
    "QueueEntry",
    "System",
    "ConfigurationError",
    "PropQueueError",
    "QueueFullError",
    "ValidationError",
    "WorkerFailure",
    "QueueLock",
    "PurgeSummary",
    "QueueStorage",
    "Processor",
    "ProcessResult",
    "ProcessSummary",
    "WorkerResult",
    "WorkerRunner",
]

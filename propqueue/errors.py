"""
Exception hierarchy for PropQueue

Setup failures abort an invocation, per-entry failures are contained.
"""

from typing import Optional


class PropQueueError(Exception):
    """Base class for all PropQueue errors"""


class ConfigurationError(PropQueueError):
    """Queue infrastructure (config, directory, lock, worker) is unusable"""


class ValidationError(PropQueueError):
    """Invalid arguments for a queue operation; nothing was written"""


class QueueFullError(PropQueueError):
    """Every sequence slot for an entry identity is already taken"""

    def __init__(self, prefix: str, slots: int):
        super().__init__(f"All {slots} queue slots for '{prefix}' are in use")
        self.prefix = prefix
        self.slots = slots


class WorkerFailure(PropQueueError):
    """
    The external worker exited non-zero for an entry.

    Never raised out of a processing run; it is attached to the entry's
    result so the caller can inspect it.
    """

    def __init__(self, filename: str, returncode: int, output: Optional[str] = None):
        super().__init__(f"Worker failed on {filename} (exit status {returncode})")
        self.filename = filename
        self.returncode = returncode
        self.output = output or ""

"""
Queue processing for PropQueue

Drains the queue by handing each entry to the external worker program.
The worker deletes an entry once the change is applied; a failed entry stays
put and blocks later entries of the same group until the next run.
"""

import logging
import subprocess
import sys
from dataclasses import dataclass, field
from typing import IO, List, Optional, Set

from .config import QueueConfig
from .entry import EntryName
from .errors import ConfigurationError, WorkerFailure
from .storage import QueueStorage

logger = logging.getLogger(__name__)


@dataclass
class WorkerResult:
    """Exit status and captured output of one worker invocation"""
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class WorkerRunner:
    """
    Runs the external worker for a single entry.

    The worker gets ``worker_args`` followed by the entry path and runs in
    the queue directory. There is no timeout.
    """

    def __init__(self, config: QueueConfig):
        """
        Initialize runner.

        Args:
            config: Site configuration naming the worker executable
        """
        self.config = config

    def command_for(self, filename: str) -> List[str]:
        entry_path = self.config.queue_dir / filename
        return [str(self.config.worker_path), *self.config.worker_args, str(entry_path)]

    def run(self, filename: str, merge_stderr: bool = False) -> WorkerResult:
        """
        Invoke the worker on an entry and wait for it.

        Args:
            filename: Entry filename inside the queue directory
            merge_stderr: Capture stderr together with stdout; otherwise
                stderr goes straight to this process's stderr

        Returns:
            WorkerResult with exit status and captured output
        """
        command = self.command_for(filename)
        logger.debug(f"Running worker: {' '.join(command)}")

        try:
            result = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if merge_stderr else None,
                text=True,
                errors='replace',
                cwd=str(self.config.queue_dir),
            )
        except OSError as e:
            raise ConfigurationError(f"Cannot run worker {self.config.worker_path}: {e}") from e

        return WorkerResult(returncode=result.returncode, output=result.stdout or "")


@dataclass
class ProcessResult:
    """
    What happened to one entry during a processing run.

    Attributes:
        filename: Entry filename
        group_key: Group the entry belongs to
        skipped: True if an earlier entry of the group failed in this run
        returncode: Worker exit status, None when skipped
        output: Captured worker output
        ignored: Failure output matched an ignore pattern
        reported: Output and warning were emitted
    """
    filename: str
    group_key: str
    skipped: bool = False
    returncode: Optional[int] = None
    output: str = ""
    ignored: bool = False
    reported: bool = False

    @property
    def failed(self) -> bool:
        return self.returncode not in (None, 0)

    @property
    def failure(self) -> Optional[WorkerFailure]:
        if not self.failed:
            return None
        return WorkerFailure(self.filename, self.returncode, self.output)


@dataclass
class ProcessSummary:
    """Outcome of a processing run"""
    results: List[ProcessResult] = field(default_factory=list)
    skipped_groups: Set[str] = field(default_factory=set)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.returncode == 0)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.failed)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def invoked(self) -> List[str]:
        return [r.filename for r in self.results if not r.skipped]


class Processor:
    """
    Drains the queue one entry at a time.

    Features:
    - Snapshot taken under the queue lock, worker runs without it
    - Entries handled in filename order
    - A failure skips the rest of its group for this run only
    - Silent mode filters failures through the ignore patterns
    """

    def __init__(self, storage: QueueStorage, config: QueueConfig,
                 runner: Optional[WorkerRunner] = None, stream: Optional[IO[str]] = None):
        """
        Initialize processor.

        Args:
            storage: Queue storage instance
            config: Site configuration
            runner: Worker runner, defaults to one built from config
            stream: Where captured worker output is written, defaults to stdout
        """
        self.storage = storage
        self.config = config
        self.runner = runner or WorkerRunner(config)
        self.stream = stream

    def _emit(self, output: str):
        stream = self.stream or sys.stdout
        stream.write(output if output.endswith('\n') else output + '\n')
        stream.flush()

    def process(self, silent: bool = False) -> ProcessSummary:
        """
        Run the worker over every queued entry.

        Args:
            silent: Merge worker stderr into its output and only report
                failures that match no ignore pattern

        Returns:
            ProcessSummary describing each entry
        """
        summary = ProcessSummary()
        foreign = []
        filenames = self.storage.snapshot()
        logger.debug(f"Processing {len(filenames)} queued entries")

        for filename in filenames:
            name = EntryName.parse(filename)
            if name is None:
                foreign.append(filename)
                continue

            result = ProcessResult(filename=filename, group_key=name.group_key)
            summary.results.append(result)

            if name.group_key in summary.skipped_groups:
                result.skipped = True
                logger.debug(f"Skipping {filename}: earlier {name.group_key} entry failed")
                continue

            worker_result = self.runner.run(filename, merge_stderr=silent)
            result.returncode = worker_result.returncode
            result.output = worker_result.output
            result.ignored = self.config.is_ignorable(worker_result.output)

            if silent:
                if not worker_result.ok and not result.ignored:
                    # Quiet runs report output with the warning, nothing else
                    detail = worker_result.output.rstrip()
                    if detail:
                        logger.warning(f"Failed to process {filename}:\n{detail}")
                    else:
                        logger.warning(f"Failed to process {filename}")
                    result.reported = True
            else:
                if worker_result.output:
                    self._emit(worker_result.output)
                if not worker_result.ok:
                    logger.warning(f"Failed to process {filename}")
                    result.reported = True

            if not worker_result.ok:
                summary.skipped_groups.add(name.group_key)

        if foreign:
            logger.warning(f"Not processing {len(foreign)} files with unrecognised names: {', '.join(foreign)}")

        return summary

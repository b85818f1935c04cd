"""
Storage layer for PropQueue

The queue is a plain directory: one file per pending change plus a lock
handle. Entries are created with O_EXCL under the queue lock and fully
written before the lock is released, so any name seen in a later snapshot
refers to a complete file.
"""

import logging
import math
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from .config import QueueConfig
from .entry import (
    MAX_SEQUENCE, DISPLAY_FORMAT, DisplayRow, EntryName, QueueEntry, read_header,
)
from .errors import ConfigurationError, QueueFullError, ValidationError
from .lock import QueueLock

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass
class PurgeSummary:
    """Outcome of a purge run"""
    examined: int = 0
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class QueueStorage:
    """
    File-per-entry queue directory.

    Features:
    - Atomic, unique entry creation (O_EXCL under the queue lock)
    - Sorted snapshots that exclude the lock handle and dot files
    - Best-effort listing and purging that skip problem entries
    """

    def __init__(self, config: QueueConfig):
        """
        Initialize storage for a configured queue directory.

        Args:
            config: Site configuration
        """
        self.config = config
        self.queue_dir = config.queue_dir

        try:
            self.queue_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create queue directory {self.queue_dir}: {e}") from e
        if not self.queue_dir.is_dir():
            raise ConfigurationError(f"Queue path is not a directory: {self.queue_dir}")

        self.lock = QueueLock(config.lock_path)

    def _list_names(self) -> List[str]:
        """Sorted entry filenames; caller must hold the lock"""
        try:
            names = os.listdir(self.queue_dir)
        except OSError as e:
            raise ConfigurationError(f"Cannot read queue directory {self.queue_dir}: {e}") from e
        return sorted(name for name in names if not name.startswith('.'))

    def snapshot(self) -> List[str]:
        """
        Take a sorted snapshot of the queue under the lock.

        Returns:
            Filenames in lexicographic order, which is chronological order
            within each group key
        """
        with self.lock.held():
            return self._list_names()

    def path_of(self, filename: str) -> Path:
        return self.queue_dir / filename

    def enqueue(self, username: str, system, action, timestamp: Optional[datetime] = None,
                payload: Sequence[str] = ()) -> EntryName:
        """
        Add a change to the queue.

        Args:
            username: Account name
            system: Target system ('ad' or 'afs')
            action: Change to make ('password', 'enable' or 'disable')
            timestamp: Queue time, defaults to now (UTC)
            payload: Content lines after the header, e.g. the new password

        Returns:
            Name of the created entry

        Raises:
            ValidationError: Invalid arguments; nothing is written
            QueueFullError: All sequence numbers for this second are taken
        """
        entry = QueueEntry.create(username, system, action, timestamp, payload)
        content = entry.render().encode('utf-8')
        base = entry.name

        with self.lock.held():
            for sequence in range(MAX_SEQUENCE):
                name = base.with_sequence(sequence)
                path = self.path_of(name.filename)
                try:
                    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
                except FileExistsError:
                    continue
                except OSError as e:
                    raise ConfigurationError(f"Cannot create queue entry {path}: {e}") from e

                try:
                    with os.fdopen(fd, 'wb') as f:
                        f.write(content)
                        f.flush()
                        os.fsync(f.fileno())
                except OSError as e:
                    # Never leave a partial entry behind
                    try:
                        os.unlink(path)
                    except FileNotFoundError:
                        pass
                    raise ConfigurationError(f"Cannot write queue entry {path}: {e}") from e

                entry.sequence = sequence
                logger.info(f"Queued {entry.action.value} for {entry.username} on {entry.system.value} as {name}")
                return name

        raise QueueFullError(base.prefix, MAX_SEQUENCE)

    def read_lines(self, filename: str) -> List[str]:
        """Content lines of an entry, without line terminators"""
        with open(self.path_of(filename), 'r', encoding='utf-8') as f:
            lines = f.read().split('\n')
        # Only \n terminates a line; other Unicode breaks belong to the text
        if lines and lines[-1] == '':
            lines.pop()
        return lines

    def list_entries(self) -> List[DisplayRow]:
        """
        Produce a readable listing of pending entries.

        Unreadable or malformed entries are skipped. Rows follow snapshot
        order.

        Returns:
            List of display rows
        """
        rows = []
        foreign = []
        for filename in self.snapshot():
            name = EntryName.parse(filename)
            if name is None:
                foreign.append(filename)
                continue

            try:
                lines = self.read_lines(filename)
            except FileNotFoundError:
                # Consumed by a worker since the snapshot was taken
                continue
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Cannot read queue entry {filename}: {e}")
                continue

            header = read_header(lines)
            if header is None:
                logger.debug(f"Skipping incomplete entry {filename}")
                continue

            username, system, action = header
            queued_at = name.queued_at
            rows.append(DisplayRow(
                username=username,
                action=action,
                system=system,
                timestamp=queued_at.strftime(DISPLAY_FORMAT),
                filename=filename,
                queued_at=queued_at,
            ))

        if foreign:
            logger.warning(f"Not listing {len(foreign)} files with unrecognised names: {', '.join(foreign)}")

        return rows

    def purge(self, retention_days: float, now: Optional[float] = None) -> PurgeSummary:
        """
        Delete entries not modified within the retention window.

        Deletion failures are logged and do not stop the run.

        Args:
            retention_days: Age threshold in days
            now: Reference time (epoch seconds), defaults to the current time

        Returns:
            PurgeSummary with removed and failed filenames
        """
        if math.isnan(retention_days) or retention_days < 0:
            raise ValidationError(f"Retention must be a non-negative number of days: {retention_days}")

        if now is None:
            now = time.time()
        max_age = retention_days * SECONDS_PER_DAY
        summary = PurgeSummary()

        with self.lock.held():
            for filename in self._list_names():
                summary.examined += 1
                path = self.path_of(filename)

                try:
                    age = now - os.stat(path).st_mtime
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.warning(f"Cannot stat {path}: {e}")
                    summary.failed.append(filename)
                    continue

                if age <= max_age:
                    continue

                try:
                    os.unlink(path)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    logger.warning(f"Failed to purge {path}: {e}")
                    summary.failed.append(filename)
                    continue

                logger.info(f"Purged {filename} ({age / SECONDS_PER_DAY:.1f} days old)")
                summary.removed.append(filename)

        return summary

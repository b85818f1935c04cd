"""
Configuration management for PropQueue

Site parameters are fixed at deployment: where the queue lives, which worker
drains it and which worker failures are noise. They are loaded once into an
immutable QueueConfig and handed to every component.
"""

import json
import os
import re
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from .errors import ConfigurationError


CONFIG_ENV_VAR = "PROPQUEUE_CONFIG"
DEFAULT_HOME = "~/.propqueue"


def _valid_patterns(value: Any) -> bool:
    if not isinstance(value, (list, tuple)):
        return False
    for pattern in value:
        if not isinstance(pattern, str):
            return False
        try:
            re.compile(pattern)
        except re.error:
            return False
    return True


# Type and range validations, keyed by config field
VALIDATIONS = {
    'queue_dir': lambda v: isinstance(v, (str, Path)) and str(v) != '',
    'worker_path': lambda v: isinstance(v, (str, Path)) and str(v) != '',
    'worker_args': lambda v: isinstance(v, (list, tuple)) and all(isinstance(a, str) for a in v),
    'ignore_patterns': _valid_patterns,
    'lock_name': lambda v: isinstance(v, str) and v.startswith('.') and '/' not in v and len(v) > 1,
    'log_level': lambda v: v in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
}

VALIDATION_INFO = {
    'queue_dir': 'Non-empty directory path',
    'worker_path': 'Non-empty path to the worker executable',
    'worker_args': 'List of strings passed before the entry path',
    'ignore_patterns': 'List of valid regular expressions',
    'lock_name': "Hidden file name starting with '.'",
    'log_level': 'One of: DEBUG, INFO, WARNING, ERROR, CRITICAL',
}


@dataclass(frozen=True)
class QueueConfig:
    """
    Immutable site configuration for one queue.

    Attributes:
        queue_dir: Directory holding entry files and the lock handle
        worker_path: External worker executable
        worker_args: Arguments placed before the entry path when invoking the worker
        ignore_patterns: Regular expressions matching worker output that is
            not worth reporting in silent mode
        lock_name: Name of the zero-length lock handle inside queue_dir
        log_level: Logging level for the command line tool
    """
    queue_dir: Path = field(default_factory=lambda: Path(os.path.expanduser(DEFAULT_HOME)) / "queue")
    worker_path: Path = Path("/usr/local/sbin/propagate")
    worker_args: Tuple[str, ...] = ("-f",)
    ignore_patterns: Tuple[str, ...] = ()
    lock_name: str = ".lock"
    log_level: str = "INFO"

    def __post_init__(self):
        for f in fields(self):
            value = getattr(self, f.name)
            if not VALIDATIONS[f.name](value):
                raise ConfigurationError(
                    f"Invalid value for '{f.name}': {value!r}. Expected: {VALIDATION_INFO[f.name]}"
                )

        # Normalise container and path types on the frozen instance
        object.__setattr__(self, 'queue_dir', Path(os.path.expanduser(str(self.queue_dir))))
        object.__setattr__(self, 'worker_path', Path(os.path.expanduser(str(self.worker_path))))
        object.__setattr__(self, 'worker_args', tuple(self.worker_args))
        object.__setattr__(self, 'ignore_patterns', tuple(self.ignore_patterns))
        object.__setattr__(
            self, '_compiled', tuple(re.compile(p, re.MULTILINE) for p in self.ignore_patterns)
        )

    @property
    def lock_path(self) -> Path:
        return self.queue_dir / self.lock_name

    def is_ignorable(self, output: str) -> bool:
        """
        Check whether worker output matches any ignorable failure pattern.

        Args:
            output: Captured worker output

        Returns:
            True if at least one pattern matches
        """
        if not output:
            return False
        return any(pattern.search(output) for pattern in self._compiled)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueConfig':
        """
        Build a configuration from a plain dictionary.

        Args:
            data: Configuration values; missing keys take their defaults

        Returns:
            QueueConfig instance
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def load(cls, path: Optional[Union[str, Path]] = None) -> 'QueueConfig':
        """
        Load configuration from a JSON file.

        The file is taken from ``path``, then ``$PROPQUEUE_CONFIG``, then
        ``~/.propqueue/config.json``. Only the last one may be absent, in
        which case the defaults are used.

        Args:
            path: Optional explicit configuration file

        Returns:
            QueueConfig instance
        """
        explicit = path or os.environ.get(CONFIG_ENV_VAR)
        config_file = Path(os.path.expanduser(str(explicit or Path(DEFAULT_HOME) / "config.json")))

        if not config_file.exists():
            if explicit:
                raise ConfigurationError(f"Configuration file not found: {config_file}")
            return cls()

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read configuration file {config_file}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {config_file} must contain a JSON object")

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """
        Get all configuration values as JSON-friendly types.

        Returns:
            Configuration dictionary
        """
        data = asdict(self)
        data['queue_dir'] = str(self.queue_dir)
        data['worker_path'] = str(self.worker_path)
        data['worker_args'] = list(self.worker_args)
        data['ignore_patterns'] = list(self.ignore_patterns)
        return data

"""
Queue entry model for PropQueue

An entry is one file in the queue directory. Its name encodes who and what
it is about plus when it was queued; its content starts with a fixed
three-line header followed by the payload.
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .errors import ValidationError


TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"
DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S UTC"
MAX_SEQUENCE = 100
HEADER_LINES = 3

SEPARATOR_SUBSTITUTE = "_"

_NAME_RE = re.compile(
    r"^(?P<username>.+)-(?P<system>ad|afs)-(?P<action_class>password|enable)"
    r"-(?P<timestamp>\d{8}T\d{6}Z)-(?P<sequence>\d{2})$"
)


class System(Enum):
    """Identity systems a change can be propagated to"""
    AD = "ad"
    AFS = "afs"


class Action(Enum):
    """Changes that can be queued"""
    PASSWORD = "password"
    ENABLE = "enable"
    DISABLE = "disable"

    @property
    def action_class(self) -> 'ActionClass':
        # disable shares the enable slot: same filename token, same group key
        if self is Action.PASSWORD:
            return ActionClass.PASSWORD
        return ActionClass.ENABLE


class ActionClass(Enum):
    """Filename-level action category"""
    PASSWORD = "password"
    ENABLE = "enable"


# Systems each action may target
SUPPORTED_SYSTEMS = {
    Action.PASSWORD: (System.AD, System.AFS),
    Action.ENABLE: (System.AD,),
    Action.DISABLE: (System.AD,),
}


def parse_system(value) -> System:
    if isinstance(value, System):
        return value
    try:
        return System(str(value).lower())
    except ValueError:
        valid = ', '.join(s.value for s in System)
        raise ValidationError(f"Unknown system '{value}'. Valid systems: {valid}") from None


def parse_action(value) -> Action:
    if isinstance(value, Action):
        return value
    try:
        return Action(str(value).lower())
    except ValueError:
        valid = ', '.join(a.value for a in Action)
        raise ValidationError(f"Unknown action '{value}'. Valid actions: {valid}") from None


def validate_combination(system: System, action: Action):
    """
    Reject system/action pairs the worker cannot carry out.

    Args:
        system: Target identity system
        action: Requested change

    Raises:
        ValidationError: If the action is not supported on that system
    """
    allowed = SUPPORTED_SYSTEMS[action]
    if system not in allowed:
        names = ', '.join(s.value for s in allowed)
        raise ValidationError(
            f"Action '{action.value}' is not supported for system '{system.value}' (supported: {names})"
        )


def sanitize_username(username: str) -> str:
    """
    Make a username safe to embed in a filename.

    Path separators are replaced so the entry cannot escape the queue
    directory. Empty names and names starting with '.' are rejected since
    they would be invisible to every queue listing.

    Args:
        username: Raw account name

    Returns:
        Sanitized username
    """
    if not username or not username.strip():
        raise ValidationError("Username must not be empty")
    if '\n' in username or '\r' in username:
        raise ValidationError("Username must not contain line breaks")

    separators = {'/', os.sep}
    if os.altsep:
        separators.add(os.altsep)
    for sep in separators:
        username = username.replace(sep, SEPARATOR_SUBSTITUTE)

    if username.startswith('.'):
        raise ValidationError(f"Username must not start with '.': {username}")
    return username


def format_queue_timestamp(moment: datetime) -> str:
    """Render a moment as the fixed-width UTC filename timestamp"""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(microsecond=0).strftime(TIMESTAMP_FORMAT)


def parse_queue_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class EntryName:
    """
    Parsed form of an entry filename.

    ``username-system-actionClass-timestamp-sequence``; everything before
    the timestamp is the group key that ties order-dependent entries
    together during processing.
    """
    username: str
    system: System
    action_class: ActionClass
    timestamp: str
    sequence: int

    @property
    def prefix(self) -> str:
        return f"{self.group_key}-{self.timestamp}"

    @property
    def group_key(self) -> str:
        return f"{self.username}-{self.system.value}-{self.action_class.value}"

    @property
    def filename(self) -> str:
        return f"{self.prefix}-{self.sequence:02d}"

    @property
    def queued_at(self) -> datetime:
        return parse_queue_timestamp(self.timestamp)

    def with_sequence(self, sequence: int) -> 'EntryName':
        return EntryName(self.username, self.system, self.action_class, self.timestamp, sequence)

    @classmethod
    def parse(cls, filename: str) -> Optional['EntryName']:
        """
        Parse a filename from the queue directory.

        Args:
            filename: Bare filename

        Returns:
            EntryName, or None if the name is not an entry name
        """
        match = _NAME_RE.match(filename)
        if not match:
            return None
        try:
            parse_queue_timestamp(match.group('timestamp'))
        except ValueError:
            return None
        return cls(
            username=match.group('username'),
            system=System(match.group('system')),
            action_class=ActionClass(match.group('action_class')),
            timestamp=match.group('timestamp'),
            sequence=int(match.group('sequence')),
        )

    def __str__(self) -> str:
        return self.filename


def group_key_of(filename: str) -> Optional[str]:
    """Group key of a queue filename, or None for non-entry names"""
    name = EntryName.parse(filename)
    return name.group_key if name else None


@dataclass
class QueueEntry:
    """
    One queued identity change.

    Attributes:
        username: Account name (already sanitized)
        system: Target identity system
        action: Requested change, kept literally in the file content
        timestamp: UTC queue time, truncated to seconds
        payload: Content lines after the header
        sequence: Disambiguating counter, assigned on enqueue
    """
    username: str
    system: System
    action: Action
    timestamp: datetime
    payload: List[str] = field(default_factory=list)
    sequence: int = 0

    @classmethod
    def create(cls, username: str, system, action, timestamp: Optional[datetime] = None,
               payload: Sequence[str] = ()) -> 'QueueEntry':
        """
        Validate arguments and build an entry.

        Args:
            username: Raw account name
            system: System token or enum
            action: Action token or enum
            timestamp: Queue time, defaults to now
            payload: Payload lines

        Returns:
            New QueueEntry instance
        """
        system = parse_system(system)
        action = parse_action(action)
        validate_combination(system, action)

        payload = [str(line) for line in payload]
        for line in payload:
            if '\n' in line or '\r' in line:
                raise ValidationError("Payload lines must not contain line breaks")
        if action is Action.PASSWORD and (len(payload) != 1 or not payload[0]):
            raise ValidationError("A password change needs exactly one non-empty password line")

        if timestamp is None:
            timestamp = datetime.now(timezone.utc)
        elif timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        return cls(
            username=sanitize_username(username),
            system=system,
            action=action,
            timestamp=timestamp.astimezone(timezone.utc).replace(microsecond=0),
            payload=payload,
        )

    @property
    def action_class(self) -> ActionClass:
        return self.action.action_class

    @property
    def name(self) -> EntryName:
        return EntryName(
            username=self.username,
            system=self.system,
            action_class=self.action_class,
            timestamp=format_queue_timestamp(self.timestamp),
            sequence=self.sequence,
        )

    @property
    def group_key(self) -> str:
        return self.name.group_key

    def content_lines(self) -> List[str]:
        return [self.username, self.system.value, self.action.value] + list(self.payload)

    def render(self) -> str:
        """File content: header then payload, each line newline-terminated"""
        return ''.join(f"{line}\n" for line in self.content_lines())

    def __repr__(self) -> str:
        # Payload may be a password; keep it out of logs and tracebacks
        return (f"QueueEntry(username='{self.username}', system={self.system.value}, "
                f"action={self.action.value}, timestamp='{format_queue_timestamp(self.timestamp)}', "
                f"sequence={self.sequence})")


@dataclass(frozen=True)
class DisplayRow:
    """One line of the human-readable queue listing"""
    username: str
    action: str
    system: str
    timestamp: str
    filename: str = ""
    queued_at: Optional[datetime] = None


def read_header(lines: Sequence[str]) -> Optional[Tuple[str, str, str]]:
    """First three content lines, or None when the entry is incomplete"""
    if len(lines) < HEADER_LINES:
        return None
    username, system, action = (line.rstrip('\r\n') for line in lines[:HEADER_LINES])
    return username, system, action

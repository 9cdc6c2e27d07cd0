from __future__ import annotations

from typing import Optional


class TailpointError(Exception):
    pass


class ConfigError(TailpointError):
    """Bad format template or bad startup configuration. Fatal at startup."""


class OpenError(TailpointError):
    """The log file could not be opened when the follower started."""


class FollowerError(TailpointError):
    """The follower's read loop stopped and cannot continue."""


class ParseError(TailpointError):
    """A line did not match the compiled format plan."""

    def __init__(self, line: str, reason: str, position: int = 0):
        super().__init__(f"{reason} at position {position}")
        self.line = line
        self.reason = reason
        self.position = position


class FieldError(TailpointError):
    """A field was absent or could not be read as a number."""

    def __init__(self, name: str, reason: str, value: Optional[str] = None):
        super().__init__(f"field {name!r}: {reason}")
        self.name = name
        self.reason = reason
        self.value = value

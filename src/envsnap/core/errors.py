"""Exceptions raised by the envsnap engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .models import DomainRecord


class EnvsnapError(Exception):
    """Base class for all envsnap errors."""


class CommandError(EnvsnapError):
    """An external command failed or could not be started."""

    def __init__(self, message: str, command: List[str], output: str = "") -> None:
        """Initialize error."""
        super().__init__(message)
        self.command = " ".join(command)
        self.output = output


class CollectorPartialFailure(EnvsnapError):
    """A collector could not enumerate its whole domain.

    Never fatal: the collection runner turns it into a partial record whose
    warnings carry the message.
    """

    def __init__(
        self, domain: str, message: str, record: Optional["DomainRecord"] = None
    ) -> None:
        """Initialize error."""
        super().__init__(f"{domain}: {message}")
        self.domain = domain
        self.message = message
        self.record = record


class BuildError(EnvsnapError):
    """The snapshot could not be built; no artifact is produced."""


class StorageUnavailable(EnvsnapError):
    """The storage backend or the requested snapshot cannot be reached."""


class CorruptSnapshot(EnvsnapError):
    """Stored snapshot content does not match its recorded hash."""


class UnsupportedFormat(EnvsnapError):
    """The snapshot declares a format version this engine cannot parse."""


class ActionFailure(EnvsnapError):
    """A single restore action failed."""

    def __init__(self, action_id: str, reason: str) -> None:
        """Initialize error."""
        super().__init__(f"{action_id}: {reason}")
        self.action_id = action_id
        self.reason = reason

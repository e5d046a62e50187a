"""Data model shared by collectors, the snapshot builder, the planner and the executor.

Every kind of captured state is an ``Item``. The ``kind`` tag tells the
executor how to apply it; nothing else in the restore path needs to know which
collector produced it.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

FORMAT_VERSION = 1


def canonical_json(value: Any) -> bytes:
    """Serialize ``value`` with sorted keys and no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def digest_bytes(data: bytes) -> str:
    """Return the sha256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def digest_json(value: Any) -> str:
    """Return the sha256 hex digest of the canonical serialization of ``value``."""
    return digest_bytes(canonical_json(value))


class ItemKind(str, Enum):
    """Tag selecting how an item is applied on restore."""

    PACKAGE = "package"
    APPLICATION = "application"
    FILE = "file"
    CREDENTIAL = "credential"
    PREFERENCE = "preference"


class ActionKind(str, Enum):
    """What the planner decided to do with an item."""

    INSTALL = "install"
    WRITE = "write"
    MERGE = "merge"
    SKIP_IDENTICAL = "skip-identical"
    CONFLICT = "conflict"


class ConflictPolicy(str, Enum):
    """How a domain resolves an item that differs from the live machine."""

    SKIP = "skip"
    SIDE_BY_SIDE = "side-by-side"
    OVERWRITE = "overwrite"
    INSTALL_MISSING = "install-missing"
    MERGE = "merge"


class ActionStatus(str, Enum):
    """Execution state of a restore action."""

    PENDING = "pending"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    SKIPPED_DEPENDENCY = "skipped-dependency"


# Statuses that a resumed run must not repeat.
COMPLETED_STATUSES = frozenset({ActionStatus.APPLIED, ActionStatus.SKIPPED})

INSTALLABLE_KINDS = frozenset({ItemKind.PACKAGE, ItemKind.APPLICATION})


@dataclass(frozen=True)
class Item:
    """Smallest unit of captured state.

    Attributes:
        identity: Path, package identity or key name, unique within its record.
        kind: Variant tag.
        digest: sha256 of the content (files) or of the package descriptor.
        inline: Small UTF-8 payload stored in the snapshot itself.
        chunks: Blob digests holding the payload when it is not inline.
        metadata: Mode, mtime, target path, manager, version, requires, ...
        content: Raw payload handed from a collector to the builder. Never
            serialized.
    """

    identity: str
    kind: ItemKind
    digest: str
    inline: Optional[str] = None
    chunks: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    content: Optional[bytes] = field(default=None, repr=False, compare=False)

    @property
    def has_payload(self) -> bool:
        return self.inline is not None or bool(self.chunks)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "identity": self.identity,
            "kind": self.kind.value,
            "digest": self.digest,
            "metadata": self.metadata,
        }
        if self.inline is not None:
            data["inline"] = self.inline
        if self.chunks:
            data["chunks"] = list(self.chunks)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        return cls(
            identity=data["identity"],
            kind=ItemKind(data["kind"]),
            digest=data["digest"],
            inline=data.get("inline"),
            chunks=tuple(data.get("chunks", ())),
            metadata=dict(data.get("metadata", {})),
        )


@dataclass
class DomainRecord:
    """All items captured for one domain."""

    domain: str
    items: List[Item] = field(default_factory=list)
    schema_version: int = 1
    warnings: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.warnings)

    def sorted_items(self) -> List[Item]:
        return sorted(self.items, key=lambda item: item.identity)

    def to_dict(self, include_warnings: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "domain": self.domain,
            "schema_version": self.schema_version,
            "items": [item.to_dict() for item in self.sorted_items()],
        }
        if include_warnings:
            data["warnings"] = list(self.warnings)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DomainRecord":
        return cls(
            domain=data["domain"],
            schema_version=int(data.get("schema_version", 1)),
            items=[Item.from_dict(item) for item in data.get("items", [])],
            warnings=list(data.get("warnings", [])),
        )


@dataclass(frozen=True)
class Snapshot:
    """Versioned artifact representing machine state at one point in time."""

    format_version: int
    created_at: str
    machine_id: str
    records: Tuple[DomainRecord, ...]
    content_hash: str

    def record(self, domain: str) -> Optional[DomainRecord]:
        for record in self.records:
            if record.domain == domain:
                return record
        return None

    def iter_items(self) -> List[Tuple[str, Item]]:
        return [(record.domain, item) for record in self.records for item in record.items]

    def chunk_digests(self) -> List[str]:
        seen: Dict[str, None] = {}
        for _, item in self.iter_items():
            for chunk in item.chunks:
                seen.setdefault(chunk, None)
        return list(seen)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format_version": self.format_version,
            "created_at": self.created_at,
            "machine_id": self.machine_id,
            "content_hash": self.content_hash,
            "records": [record.to_dict() for record in self.records],
        }


@dataclass(frozen=True)
class RestoreAction:
    """A single planned step converging the live machine toward a snapshot."""

    domain: str
    item: Item
    kind: ActionKind
    justification: str
    policy: ConflictPolicy = ConflictPolicy.SKIP
    blocking: bool = False
    depends_on: Tuple[str, ...] = ()

    @property
    def action_id(self) -> str:
        return f"{self.domain}/{self.item.identity}"


@dataclass
class ActionOutcome:
    """Execution result of one restore action."""

    action: RestoreAction
    status: ActionStatus = ActionStatus.PENDING
    reason: str = ""

    @property
    def action_id(self) -> str:
        return self.action.action_id


@dataclass
class RestoreResult:
    """Outcome of a restore run, in plan order."""

    outcomes: List[ActionOutcome] = field(default_factory=list)
    cancelled: bool = False

    def with_status(self, status: ActionStatus) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def conflicts(self) -> List[ActionOutcome]:
        return [
            o
            for o in self.outcomes
            if o.action.kind in (ActionKind.CONFLICT, ActionKind.MERGE)
        ]

    @property
    def ok(self) -> bool:
        """True when every action completed and none needed manual attention."""
        if self.cancelled or self.conflicts:
            return False
        return all(o.status in COMPLETED_STATUSES for o in self.outcomes)

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ActionStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        counts["conflicts"] = len(self.conflicts)
        return counts

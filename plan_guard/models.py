"""
Core data models for plan-guard.

This module defines the foundational data structures used throughout the system:
- Enums for manifest feature status, tracker status and tracker item types
- The Feature record stored one-per-line in manifest.jsonl
- TrackerItem, the external tracker's view of a work item
- JSON serialization support for the manifest format
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class FeatureStatus(str, Enum):
    """
    Status of a feature in the local manifest.

    pending -> in_progress -> completed | failed, with failed -> pending on retry.
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TrackerStatus(str, Enum):
    """Status of an item in the external tracker."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value: Any) -> Optional[TrackerStatus]:
        """Parse a raw status, returning None for anything unrecognized."""
        try:
            return cls(value)
        except ValueError:
            return None


class IssueType(str, Enum):
    """Type of an item in the external tracker."""
    EPIC = "epic"
    FEATURE = "feature"
    TASK = "task"
    BUG = "bug"
    CHORE = "chore"


# Manifest field order; preserved on every rewrite
MANIFEST_FIELDS: tuple[str, ...] = (
    "id",
    "file",
    "title",
    "description",
    "depends_on",
    "status",
    "verification",
    "beads_id",
    "devops_id",
)

# Values an optional key takes when the record does not carry it
OPTIONAL_FIELD_DEFAULTS: dict[str, Any] = {
    "file": "",
    "description": "",
    "depends_on": [],
    "devops_id": None,
}


@dataclass
class Feature:
    """
    One schedulable unit of work in a plan.

    Bound one-to-one to a tracker item through ``beads_id``. Keys the
    manifest carries that this model does not know about are kept in
    ``extra`` so a rewrite never drops data, and optional keys listed in
    ``absent`` are left out again while they hold their default value.
    """
    id: str
    title: str
    status: FeatureStatus
    verification: str                # Shell command that proves the feature works
    beads_id: str                    # Bound tracker item
    file: str = ""                   # Prompt file, relative to the plan directory
    description: str = ""
    depends_on: list[str] = field(default_factory=list)
    devops_id: Optional[str] = None  # Secondary board id, not interpreted here
    extra: dict[str, Any] = field(default_factory=dict)
    absent: frozenset[str] = field(
        default_factory=lambda: frozenset({"devops_id"}), compare=False, repr=False
    )

    @property
    def is_pending(self) -> bool:
        return self.status == FeatureStatus.PENDING

    @property
    def is_in_progress(self) -> bool:
        return self.status == FeatureStatus.IN_PROGRESS

    @property
    def is_completed(self) -> bool:
        return self.status == FeatureStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == FeatureStatus.FAILED

    def with_status(self, status: FeatureStatus) -> Feature:
        """Return a copy of this feature with a different status."""
        return Feature(
            id=self.id,
            title=self.title,
            status=status,
            verification=self.verification,
            beads_id=self.beads_id,
            file=self.file,
            description=self.description,
            depends_on=list(self.depends_on),
            devops_id=self.devops_id,
            extra=dict(self.extra),
            absent=self.absent,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary in manifest field order."""
        values: dict[str, Any] = {
            "id": self.id,
            "file": self.file,
            "title": self.title,
            "description": self.description,
            "depends_on": list(self.depends_on),
            "status": self.status.value,
            "verification": self.verification,
            "beads_id": self.beads_id,
            "devops_id": self.devops_id,
        }
        data = {
            key: value for key, value in values.items()
            if not (key in self.absent and value == OPTIONAL_FIELD_DEFAULTS[key])
        }
        for key, value in self.extra.items():
            if key not in data:
                data[key] = value
        return data

    def to_json_line(self) -> str:
        """Serialize as one compact manifest line (no trailing newline)."""
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Feature:
        """
        Create from a manifest record.

        Assumes the record has already been validated by the manifest store.
        """
        extra = {k: v for k, v in data.items() if k not in MANIFEST_FIELDS}
        return cls(
            id=data["id"],
            title=data["title"],
            status=FeatureStatus(data["status"]),
            verification=data["verification"],
            beads_id=data["beads_id"],
            file=data.get("file", ""),
            description=data.get("description", ""),
            depends_on=list(data.get("depends_on", [])),
            devops_id=data.get("devops_id"),
            extra=extra,
            absent=frozenset(k for k in OPTIONAL_FIELD_DEFAULTS if k not in data),
        )


@dataclass
class TrackerItem:
    """
    External tracker representation of a work item.

    ``dependencies`` and ``dependents`` are only populated by a full show
    call and are only used by the workflow compliance gate.
    """
    id: str
    title: str = ""
    description: str = ""
    status: Optional[TrackerStatus] = None
    issue_type: str = "task"
    dependencies: list[TrackerItem] = field(default_factory=list)
    dependents: list[TrackerItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackerItem:
        """Create from a `bd ... --json` object."""
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title") or "",
            description=data.get("description") or "",
            status=TrackerStatus.parse(data.get("status")),
            issue_type=(data.get("issue_type") or "task").lower(),
            dependencies=[
                cls.from_dict(dep) for dep in data.get("dependencies") or []
                if isinstance(dep, dict)
            ],
            dependents=[
                cls.from_dict(dep) for dep in data.get("dependents") or []
                if isinstance(dep, dict)
            ],
        )

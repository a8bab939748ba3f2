"""
Manifest persistence for plan-guard.

This module handles:
- Loading <plan_dir>/manifest.jsonl into an ordered list of Features
- Strict validation: any malformed or incomplete record is fatal
- Atomic full rewrites that preserve feature order
- Pure query helpers over a loaded manifest

The manifest is line-delimited but it is not an append log. It is always
read whole and rewritten whole, never patched in place.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable, Optional

from filelock import FileLock, Timeout

from plan_guard.errors import (
    ManifestParseError,
    ManifestReadError,
    ManifestValidationError,
    ManifestWriteError,
)
from plan_guard.models import Feature, FeatureStatus
from plan_guard.utils.fs import FileSystemError, file_exists, read_bytes, safe_write

if TYPE_CHECKING:
    from plan_guard.logger import PlanLogger

MANIFEST_FILENAME = "manifest.jsonl"
WRITE_LOCK_FILENAME = ".manifest.jsonl.lock"
WRITE_LOCK_TIMEOUT_SECONDS = 10

_REQUIRED_STRINGS = ("id", "title", "verification", "beads_id")
_NON_EMPTY = ("id", "verification", "beads_id")

_logger = logging.getLogger(__name__)


def manifest_path(plan_dir: str | Path) -> Path:
    """Path of the manifest file inside a plan directory."""
    return Path(plan_dir) / MANIFEST_FILENAME


# =============================================================================
# Parsing and validation
# =============================================================================


def decode_manifest(data: bytes) -> str:
    """Decode manifest bytes as UTF-8, naming the first undecodable line."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        line_number = data.count(b"\n", 0, e.start) + 1
        raise ManifestParseError(line_number, e.reason, problem="is not valid UTF-8")


def _parse_lines(content: str) -> list[dict[str, Any]]:
    """Parse manifest text into raw records, reporting 1-based line numbers."""
    records = []
    for line_number, line in enumerate(content.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            raise ManifestParseError(line_number, e.msg)
        if not isinstance(record, dict):
            raise ManifestParseError(line_number, "expected a JSON object")
        records.append(record)
    return records


def _validate_record(record: dict[str, Any]) -> None:
    """Validate the fields of a single record."""
    raw_id = record.get("id")
    feature_id = raw_id if isinstance(raw_id, str) and raw_id else None

    for name in _REQUIRED_STRINGS:
        if name not in record or record[name] is None:
            raise ManifestValidationError(name, "missing required field", feature_id)
        if not isinstance(record[name], str):
            raise ManifestValidationError(name, "must be a string", feature_id)
        if name in _NON_EMPTY and not record[name].strip():
            raise ManifestValidationError(name, "must not be empty", feature_id)

    if "status" not in record:
        raise ManifestValidationError("status", "missing required field", feature_id)
    allowed = [s.value for s in FeatureStatus]
    if record["status"] not in allowed:
        raise ManifestValidationError(
            "status",
            f"'{record['status']}' is not one of {', '.join(allowed)}",
            feature_id,
        )

    for name in ("file", "description"):
        if name in record and not isinstance(record[name], str):
            raise ManifestValidationError(name, "must be a string", feature_id)

    depends_on = record.get("depends_on", [])
    if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
        raise ManifestValidationError("depends_on", "must be a list of feature ids", feature_id)

    devops_id = record.get("devops_id")
    if devops_id is not None and not isinstance(devops_id, str):
        raise ManifestValidationError("devops_id", "must be a string or null", feature_id)


def find_dependency_cycle(features: Iterable[Feature]) -> Optional[list[str]]:
    """
    Detect a cycle in the dependency graph using Kahn's algorithm.

    Returns:
        Ids of the features left on a cycle, or None if the graph is a DAG.
    """
    features = list(features)
    dependents: dict[str, list[str]] = {f.id: [] for f in features}
    in_degree: dict[str, int] = {f.id: 0 for f in features}

    for feature in features:
        for dep in feature.depends_on:
            if dep in dependents:
                dependents[dep].append(feature.id)
                in_degree[feature.id] += 1

    queue = deque(fid for fid, degree in in_degree.items() if degree == 0)
    processed = 0

    while queue:
        node = queue.popleft()
        processed += 1
        for neighbor in dependents[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if processed != len(in_degree):
        return [f.id for f in features if in_degree[f.id] > 0]
    return None


def parse_manifest(content: str) -> list[Feature]:
    """
    Parse and validate manifest text.

    Raises:
        ManifestParseError: A line is not a JSON object.
        ManifestValidationError: A record or the manifest as a whole is invalid.
    """
    records = _parse_lines(content)

    features: list[Feature] = []
    seen_ids: set[str] = set()
    seen_tracker_ids: dict[str, str] = {}

    for record in records:
        _validate_record(record)
        feature = Feature.from_dict(record)

        if feature.id in seen_ids:
            raise ManifestValidationError("id", "duplicate feature id", feature.id)
        seen_ids.add(feature.id)

        owner = seen_tracker_ids.get(feature.beads_id)
        if owner is not None:
            raise ManifestValidationError(
                "beads_id",
                f"tracker item {feature.beads_id} is already bound to {owner}",
                feature.id,
            )
        seen_tracker_ids[feature.beads_id] = feature.id
        features.append(feature)

    for feature in features:
        for dep in feature.depends_on:
            if dep not in seen_ids:
                raise ManifestValidationError(
                    "depends_on", f"unknown feature '{dep}'", feature.id
                )
            if dep == feature.id:
                raise ManifestValidationError("depends_on", "feature depends on itself", feature.id)

    cycle = find_dependency_cycle(features)
    if cycle:
        raise ManifestValidationError(
            "depends_on", f"circular dependency involving {', '.join(cycle)}"
        )

    return features


def serialize_manifest(features: Iterable[Feature]) -> str:
    """Serialize features to manifest text, one line each, in order."""
    lines = [feature.to_json_line() for feature in features]
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


# =============================================================================
# Store
# =============================================================================


class ManifestStore:
    """
    File-backed manifest for one plan directory.

    Loads are all-or-nothing and saves are atomic, so a crash at any point
    leaves either the previous manifest or the new one on disk.
    """

    def __init__(
        self,
        plan_dir: str | Path,
        logger: Optional[PlanLogger] = None,
    ) -> None:
        """
        Initialize the manifest store.

        Args:
            plan_dir: Directory holding manifest.jsonl.
            logger: Optional logger for recording operations.
        """
        self.plan_dir = Path(plan_dir)
        self.path = manifest_path(self.plan_dir)
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def exists(self) -> bool:
        """Whether the plan directory has a manifest."""
        return file_exists(self.path)

    def read_text(self) -> str:
        """
        Raw manifest text, or an empty string if there is no manifest.

        Raises:
            ManifestParseError: The file is not valid UTF-8.
            ManifestReadError: The file exists but cannot be read.
        """
        if not self.exists():
            return ""
        try:
            data = read_bytes(self.path)
        except FileSystemError as e:
            raise ManifestReadError(f"Cannot read manifest {self.path}: {e}")
        return decode_manifest(data)

    def load(self) -> list[Feature]:
        """
        Load and validate the manifest.

        Returns:
            Features in manifest order. A missing manifest loads as [].

        Raises:
            ManifestParseError: A line is not valid UTF-8 JSON.
            ManifestReadError: The manifest cannot be read.
            ManifestValidationError: A record is incomplete or invalid.
        """
        if not self.exists():
            self._log("manifest_missing", {"path": str(self.path)}, level="debug")
            return []

        try:
            features = parse_manifest(self.read_text())
        except (ManifestParseError, ManifestReadError, ManifestValidationError) as e:
            self._log("manifest_invalid", {"path": str(self.path), "error": str(e)}, level="error")
            raise

        self._log("manifest_loaded", {"features": len(features)}, level="debug")
        return features

    def save(self, features: Iterable[Feature]) -> None:
        """
        Atomically overwrite the manifest, preserving the given order.

        Writers are serialized with a short-lived file lock next to the
        manifest.

        Raises:
            ManifestWriteError: If the write fails or the write lock cannot be
                taken. The old manifest is untouched.
        """
        features = list(features)
        content = serialize_manifest(features)
        try:
            self.plan_dir.mkdir(parents=True, exist_ok=True)
            with FileLock(self.plan_dir / WRITE_LOCK_FILENAME, timeout=WRITE_LOCK_TIMEOUT_SECONDS):
                safe_write(self.path, content)
        except Timeout:
            self._log("manifest_save_timeout", {"path": str(self.path)}, level="error")
            raise ManifestWriteError(f"Timed out waiting for the write lock on {self.path}")
        except (FileSystemError, OSError) as e:
            _logger.error("Failed to save manifest %s: %s", self.path, e)
            self._log("manifest_save_error", {"error": str(e)}, level="error")
            raise ManifestWriteError(f"Failed to save manifest {self.path}: {e}")

        self._log("manifest_saved", {"features": len(features)})


def load_manifest(plan_dir: str | Path) -> list[Feature]:
    """Load a plan directory's manifest."""
    return ManifestStore(plan_dir).load()


def save_manifest(plan_dir: str | Path, features: Iterable[Feature]) -> None:
    """Atomically overwrite a plan directory's manifest."""
    ManifestStore(plan_dir).save(features)


# =============================================================================
# Query helpers
# =============================================================================


def find_feature(features: Iterable[Feature], feature_id: str) -> Optional[Feature]:
    """Look up a feature by id."""
    for feature in features:
        if feature.id == feature_id:
            return feature
    return None


def current_feature(features: Iterable[Feature]) -> Optional[Feature]:
    """First feature with status in_progress, if any."""
    for feature in features:
        if feature.is_in_progress:
            return feature
    return None


def completed_features(features: Iterable[Feature]) -> list[Feature]:
    """All completed features, in manifest order."""
    return [f for f in features if f.is_completed]


def unmet_dependencies(features: Iterable[Feature], feature: Feature) -> list[str]:
    """Dependencies of ``feature`` that are not completed."""
    completed = {f.id for f in features if f.is_completed}
    return [dep for dep in feature.depends_on if dep not in completed]


def ready_features(features: Iterable[Feature]) -> list[Feature]:
    """
    Pending features whose dependencies are all completed.

    Returned in manifest order, so the first entry is the next one to work.
    """
    features = list(features)
    completed = {f.id for f in features if f.is_completed}
    return [
        f for f in features
        if f.is_pending and all(dep in completed for dep in f.depends_on)
    ]


def replace_feature(features: Iterable[Feature], updated: Feature) -> list[Feature]:
    """Return a new list with ``updated`` swapped in at its original position."""
    return [updated if f.id == updated.id else f for f in features]

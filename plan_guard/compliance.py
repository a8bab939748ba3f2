"""
Workflow compliance check over active tracker items.

Work has to happen on executable units. An item that stands for an
undecomposed higher-level unit may not be in progress itself:

- A master-plan epic (feature children, no direct task children) is worked
  through its features, never directly.
- A feature must be decomposed first: it needs task children, or a
  supporting plan folder at <plans_dir>/<kebab-title>/.
- A task may only be worked once its parent feature is planned.

Bugs and chores are exempt, as are tasks titled "Research: ...", which are
allowed to happen before planning.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from plan_guard.models import IssueType, TrackerItem
from plan_guard.utils.fs import dir_exists, to_kebab_case

if TYPE_CHECKING:
    from plan_guard.config import WorkflowConfig
    from plan_guard.tracker import TrackerClient

OBJECTIVE_MARKERS = ("## Objective", "## Summary", "## Overview")
IMPLEMENTATION_MARKERS = ("## Implementation", "## Approach", "## Deliverables")


@dataclass
class Violation:
    """One item being worked against the workflow rules."""
    item_id: str
    title: str
    message: str

    def __str__(self) -> str:
        return f"{self.item_id} ({self.title}): {self.message}"


class WorkflowCompliance:
    """Checks in-progress tracker items against the decomposition rules."""

    def __init__(
        self,
        tracker: TrackerClient,
        config: WorkflowConfig,
        plans_root: Path,
    ) -> None:
        self._tracker = tracker
        self._config = config
        self._plans_root = Path(plans_root)

    def check(self) -> list[Violation]:
        """Return every violation among the currently in-progress items."""
        violations = []
        for item in self._tracker.list_in_progress():
            violation = self.check_item(item)
            if violation is not None:
                violations.append(violation)
        return violations

    def check_item(self, item: TrackerItem) -> Optional[Violation]:
        """Check a single active item."""
        if self.is_exempt(item):
            return None

        full = self._tracker.get_item(item.id) or item

        if full.issue_type == IssueType.EPIC.value:
            if self.is_master_plan_epic(full):
                return Violation(
                    full.id, full.title,
                    "master plan epic cannot be worked directly; start one of its features",
                )
            return None

        if full.issue_type == IssueType.FEATURE.value:
            if not self.is_feature_decomposed(full):
                return Violation(
                    full.id, full.title,
                    "feature has not been decomposed into tasks; plan it before implementing",
                )
            return None

        if full.issue_type == IssueType.TASK.value:
            parent = self.parent_feature(full)
            if parent is not None and not self.is_feature_planned(parent):
                return Violation(
                    full.id, full.title,
                    f"parent feature {parent.id} ({parent.title}) has not been planned",
                )

        return None

    def is_exempt(self, item: TrackerItem) -> bool:
        """Exempt categories: configured types and research tasks."""
        if item.issue_type in self._config.exempt_types:
            return True
        return (
            item.issue_type == IssueType.TASK.value
            and item.title.lower().startswith(self._config.research_prefix)
        )

    def is_master_plan_epic(self, epic: TrackerItem) -> bool:
        """An epic with feature children and no direct task children."""
        types = {dep.issue_type for dep in epic.dependents}
        return IssueType.FEATURE.value in types and IssueType.TASK.value not in types

    def _has_plan_folder(self, feature: TrackerItem) -> bool:
        slug = to_kebab_case(feature.title)
        return bool(slug) and dir_exists(self._plans_root / slug)

    def is_feature_decomposed(self, feature: TrackerItem) -> bool:
        """Task children in the tracker, or a supporting plan folder."""
        if self._has_plan_folder(feature):
            return True
        return any(dep.issue_type == IssueType.TASK.value for dep in feature.dependents)

    def is_feature_planned(self, feature: TrackerItem) -> bool:
        """
        A plan folder, or a description with an objective section, an
        implementation section and enough substance.
        """
        if self._has_plan_folder(feature):
            return True
        description = feature.description
        return (
            any(marker in description for marker in OBJECTIVE_MARKERS)
            and any(marker in description for marker in IMPLEMENTATION_MARKERS)
            and len(description) >= self._config.min_description_length
        )

    def parent_feature(self, task: TrackerItem) -> Optional[TrackerItem]:
        """First feature among a task's dependencies, fully loaded."""
        for dep in task.dependencies:
            if dep.issue_type == IssueType.FEATURE.value:
                return self._tracker.get_item(dep.id) or dep
        return None

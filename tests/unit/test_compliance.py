"""Tests for the workflow compliance check."""

import pytest

from plan_guard.compliance import WorkflowCompliance
from plan_guard.config import WorkflowConfig
from plan_guard.models import TrackerItem

PLANNED_DESCRIPTION = (
    "## Objective\nLet users export reports.\n\n"
    "## Implementation\n" + "Add an exporter module and wire it to the UI. " * 20
)


@pytest.fixture
def compliance(fake_tracker, tmp_path):
    return WorkflowCompliance(fake_tracker, WorkflowConfig(), tmp_path / "plans")


def _item(item_id, title, issue_type, **kwargs):
    return TrackerItem(id=item_id, title=title, issue_type=issue_type, **kwargs)


class TestWorkflowCompliance:
    """Tests for WorkflowCompliance.check()."""

    def test_no_active_items(self, compliance):
        assert compliance.check() == []

    def test_exempt_types(self, compliance, fake_tracker):
        fake_tracker.in_progress_items = [
            _item("bd-1", "Crash on save", "bug"),
            _item("bd-2", "Bump deps", "chore"),
        ]

        assert compliance.check() == []

    def test_research_task_exempt(self, compliance, fake_tracker):
        parent = _item("bd-10", "Payments", "feature")
        fake_tracker.in_progress_items = [
            _item("bd-11", "Research: payment providers", "task", dependencies=[parent]),
        ]

        assert compliance.check() == []

    def test_master_plan_epic_cannot_be_worked(self, compliance, fake_tracker):
        epic = _item("bd-1", "Q3 roadmap", "epic",
                     dependents=[_item("bd-2", "Auth", "feature")])
        fake_tracker.in_progress_items = [epic]
        fake_tracker.items["bd-1"] = epic

        violations = compliance.check()

        assert len(violations) == 1
        assert "master plan epic" in violations[0].message

    def test_epic_with_tasks_is_fine(self, compliance, fake_tracker):
        epic = _item("bd-1", "Small epic", "epic", dependents=[_item("bd-2", "Do it", "task")])
        fake_tracker.in_progress_items = [epic]

        assert compliance.check() == []

    def test_undecomposed_feature(self, compliance, fake_tracker):
        fake_tracker.in_progress_items = [_item("bd-5", "User Export", "feature")]

        violations = compliance.check()

        assert str(violations[0]).startswith("bd-5 (User Export): feature has not been decomposed")

    def test_feature_with_plan_folder(self, compliance, fake_tracker, tmp_path):
        (tmp_path / "plans" / "user-export").mkdir(parents=True)
        fake_tracker.in_progress_items = [_item("bd-5", "User Export", "feature")]

        assert compliance.check() == []

    def test_feature_with_task_children(self, compliance, fake_tracker):
        fake_tracker.in_progress_items = [
            _item("bd-5", "User Export", "feature", dependents=[_item("bd-6", "CSV", "task")]),
        ]

        assert compliance.check() == []

    def test_task_of_unplanned_feature(self, compliance, fake_tracker):
        parent = _item("bd-5", "User Export", "feature", description="todo")
        fake_tracker.items["bd-5"] = parent
        fake_tracker.in_progress_items = [
            _item("bd-6", "CSV writer", "task", dependencies=[_item("bd-5", "", "feature")]),
        ]

        violations = compliance.check()

        assert "parent feature bd-5 (User Export) has not been planned" in violations[0].message

    def test_task_of_planned_feature(self, compliance, fake_tracker):
        fake_tracker.items["bd-5"] = _item("bd-5", "User Export", "feature",
                                           description=PLANNED_DESCRIPTION)
        fake_tracker.in_progress_items = [
            _item("bd-6", "CSV writer", "task", dependencies=[_item("bd-5", "", "feature")]),
        ]

        assert compliance.check() == []

    def test_short_description_is_not_a_plan(self, compliance):
        feature = _item("bd-5", "User Export", "feature",
                        description="## Objective\nx\n## Implementation\ny")

        assert compliance.is_feature_planned(feature) is False

    def test_orphan_task_is_fine(self, compliance, fake_tracker):
        fake_tracker.in_progress_items = [_item("bd-6", "Standalone", "task")]

        assert compliance.check() == []

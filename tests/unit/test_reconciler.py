"""Tests for manifest/tracker reconciliation."""

import json

import pytest

from plan_guard.errors import ExitCode, ManifestParseError, TrackerSyncError
from plan_guard.manifest_store import ManifestStore
from plan_guard.models import FeatureStatus, TrackerStatus
from plan_guard.reconciler import (
    ReconcileOutcome,
    Reconciler,
    TrackerAction,
    decide,
    resolve_crash,
)


def _statuses(plan):
    lines = (plan / "manifest.jsonl").read_text().splitlines()
    return {json.loads(line)["id"]: json.loads(line)["status"] for line in lines}


class TestDecide:
    """Tests for the pure decision table."""

    @pytest.mark.parametrize("local,remote,new_status,action", [
        ("pending", "open", "pending", TrackerAction.NONE),
        ("pending", "in_progress", "pending", TrackerAction.REOPEN),
        ("pending", "closed", "completed", TrackerAction.NONE),
        ("in_progress", "open", "pending", TrackerAction.NONE),
        ("in_progress", "closed", "completed", TrackerAction.NONE),
        ("completed", "open", "completed", TrackerAction.CLOSE),
        ("completed", "in_progress", "completed", TrackerAction.CLOSE),
        ("completed", "closed", "completed", TrackerAction.NONE),
        ("failed", "open", "pending", TrackerAction.REOPEN),
        ("failed", "in_progress", "pending", TrackerAction.REOPEN),
        ("failed", "closed", "pending", TrackerAction.REOPEN),
    ])
    def test_table(self, local, remote, new_status, action):
        decision = decide(FeatureStatus(local), TrackerStatus(remote))

        assert decision.new_status == FeatureStatus(new_status)
        assert decision.tracker_action == action
        assert decision.needs_crash_check is False

    def test_table_is_exhaustive(self):
        for local in FeatureStatus:
            for remote in TrackerStatus:
                assert decide(local, remote) is not None

    def test_both_in_progress_needs_crash_check(self):
        assert decide(FeatureStatus.IN_PROGRESS, TrackerStatus.IN_PROGRESS).needs_crash_check

    def test_resolve_crash(self):
        assert resolve_crash(True, True).new_status == FeatureStatus.COMPLETED
        assert resolve_crash(True, True).tracker_action == TrackerAction.CLOSE
        assert resolve_crash(False, True).new_status == FeatureStatus.PENDING
        assert resolve_crash(True, False).new_status == FeatureStatus.PENDING
        assert resolve_crash(True, False).tracker_action == TrackerAction.REOPEN


class TestReconciler:
    """Tests for Reconciler.reconcile()."""

    def _reconciler(self, plan, tracker, runner):
        return Reconciler(ManifestStore(plan), tracker, runner)

    def test_consistent_plan_is_untouched(self, write_manifest, make_record, fake_tracker, fake_runner):
        plan = write_manifest([
            make_record("F001", status="completed"),
            make_record("F002"),
        ])
        fake_tracker.seed({"bd-f001": "closed", "bd-f002": "open"})
        before = (plan / "manifest.jsonl").read_bytes()

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.outcome == ReconcileOutcome.OK
        assert report.exit_code == ExitCode.OK
        assert report.manifest_written is False
        assert report.actions == []
        assert fake_tracker.mutations == []
        assert (plan / "manifest.jsonl").read_bytes() == before

    def test_pending_with_tracker_in_progress_rolls_tracker_back(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001")])
        fake_tracker.seed({"bd-f001": "in_progress"})

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.ok
        assert fake_tracker.mutations == [("set_status", "bd-f001", "open")]
        assert _statuses(plan) == {"F001": "pending"}

    def test_pending_with_tracker_closed_trusts_tracker(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001")])
        fake_tracker.seed({"bd-f001": "closed"})

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.manifest_written is True
        assert _statuses(plan) == {"F001": "completed"}
        assert fake_tracker.mutations == []

    def test_in_progress_with_tracker_open_resets(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001", status="in_progress")])
        fake_tracker.seed({"bd-f001": "open"})

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.ok
        assert _statuses(plan) == {"F001": "pending"}
        assert fake_tracker.mutations == []

    def test_crash_check_success_completes(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001", status="in_progress", verification="npm test")])
        fake_tracker.seed({"bd-f001": "in_progress"})
        fake_runner.script("npm test", success=True)

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.ok
        assert _statuses(plan) == {"F001": "completed"}
        assert fake_tracker.mutations == [("close", "bd-f001", "Reconciled: F001 completed")]
        assert "npm test" in fake_runner.calls
        assert report.entries[0].working_tree_clean is True

    def test_crash_check_failed_verification_resets(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001", status="in_progress", verification="npm test")])
        fake_tracker.seed({"bd-f001": "in_progress"})
        fake_runner.script("npm test", success=False, output="1 failing")

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.ok
        assert _statuses(plan) == {"F001": "pending"}
        assert fake_tracker.mutations == [("set_status", "bd-f001", "open")]

    def test_crash_check_dirty_tree_resets(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001", status="in_progress")])
        fake_tracker.seed({"bd-f001": "in_progress"})
        fake_runner.changes = [" M src/app.py"]

        self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert _statuses(plan) == {"F001": "pending"}
        assert fake_tracker.mutations == [("set_status", "bd-f001", "open")]

    def test_crash_check_timeout_resets(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001", status="in_progress", verification="slow")])
        fake_tracker.seed({"bd-f001": "in_progress"})
        fake_runner.script("slow", success=False, returncode=-15, timed_out=True, timeout_seconds=1)

        self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert _statuses(plan) == {"F001": "pending"}

    def test_completed_with_open_tracker_closes(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001", status="completed")])
        fake_tracker.seed({"bd-f001": "open"})

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.manifest_written is False
        assert fake_tracker.mutations == [("close", "bd-f001", "Reconciled: F001 completed")]

    def test_failed_feature_is_reset_for_retry(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001", status="failed")])
        fake_tracker.seed({"bd-f001": "in_progress"})

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.ok
        assert _statuses(plan) == {"F001": "pending"}
        assert fake_tracker.statuses["bd-f001"] == TrackerStatus.OPEN

    def test_second_pass_is_a_noop(self, write_manifest, make_record, fake_tracker, fake_runner):
        plan = write_manifest([
            make_record("F001", status="completed"),
            make_record("F002", status="failed"),
            make_record("F003", status="in_progress"),
            make_record("F004"),
        ])
        fake_tracker.seed({
            "bd-f001": "open",
            "bd-f002": "closed",
            "bd-f003": "in_progress",
            "bd-f004": "closed",
        })
        reconciler = self._reconciler(plan, fake_tracker, fake_runner)
        reconciler.reconcile()
        after_first = (plan / "manifest.jsonl").read_bytes()
        mutations = len(fake_tracker.mutations)

        report = reconciler.reconcile()

        assert report.actions == []
        assert report.manifest_written is False
        assert len(fake_tracker.mutations) == mutations
        assert (plan / "manifest.jsonl").read_bytes() == after_first

    def test_corrupt_manifest_aborts_before_any_side_effect(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001", status="completed")])
        path = plan / "manifest.jsonl"
        path.write_text(path.read_text() + '{"id": "F002", "status": \n')
        before = path.read_bytes()
        fake_tracker.seed({"bd-f001": "open"})

        with pytest.raises(ManifestParseError) as exc_info:
            self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert exc_info.value.line == 2
        assert fake_tracker.calls == []
        assert fake_runner.calls == []
        assert path.read_bytes() == before

    def test_sync_failure_aborts_without_writes(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001")])
        fake_tracker.seed({"bd-f001": "closed"})
        fake_tracker.sync_error = "network unreachable"
        before = (plan / "manifest.jsonl").read_bytes()

        with pytest.raises(TrackerSyncError) as exc_info:
            self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert exc_info.value.exit_code == ExitCode.FATAL
        assert fake_tracker.mutations == []
        assert (plan / "manifest.jsonl").read_bytes() == before

    def test_tracker_failure_needs_retry(self, write_manifest, make_record, fake_tracker, fake_runner):
        plan = write_manifest([
            make_record("F001", status="failed"),
            make_record("F002", status="completed"),
        ])
        fake_tracker.seed({"bd-f001": "open", "bd-f002": "open"})
        fake_tracker.fail_close.add("bd-f002")

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.outcome == ReconcileOutcome.NEEDS_RETRY
        assert report.exit_code == ExitCode.BLOCKED
        assert len(report.errors) == 1
        assert "bd-f002" in report.errors[0]
        # Manifest side still applied
        assert _statuses(plan) == {"F001": "pending", "F002": "completed"}

    def test_manifest_is_saved_before_tracker_actions(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001", status="failed")])
        fake_tracker.seed({"bd-f001": "closed"})
        seen = {}
        original = fake_tracker.set_status

        def spy(tracker_id, status):
            seen["manifest"] = _statuses(plan)
            return original(tracker_id, status)

        fake_tracker.set_status = spy

        self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert seen["manifest"] == {"F001": "pending"}

    def test_unknown_tracker_status_is_skipped(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001"), make_record("F002", status="completed")])
        fake_tracker.seed({"bd-f002": "open"})

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.ok
        assert [e.feature_id for e in report.skipped] == ["F001"]
        assert fake_tracker.mutations == [("close", "bd-f002", "Reconciled: F002 completed")]

    def test_unresolved_in_progress_needs_manual_intervention(
        self, write_manifest, make_record, fake_tracker, fake_runner
    ):
        plan = write_manifest([make_record("F001", status="in_progress")])

        report = self._reconciler(plan, fake_tracker, fake_runner).reconcile()

        assert report.outcome == ReconcileOutcome.NEEDS_MANUAL_INTERVENTION
        assert report.exit_code == ExitCode.BLOCKED
        assert "F001" in report.anomalies[0]
        assert _statuses(plan) == {"F001": "in_progress"}

    def test_empty_plan(self, tmp_path, fake_tracker, fake_runner):
        report = self._reconciler(tmp_path / "plan", fake_tracker, fake_runner).reconcile()

        assert report.ok
        assert report.entries == []

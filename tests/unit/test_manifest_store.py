"""Tests for manifest loading, validation and atomic rewrites."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from filelock import Timeout

from plan_guard.errors import (
    ExitCode,
    ManifestParseError,
    ManifestReadError,
    ManifestValidationError,
    ManifestWriteError,
)
from plan_guard.manifest_store import (
    ManifestStore,
    current_feature,
    decode_manifest,
    find_dependency_cycle,
    load_manifest,
    parse_manifest,
    ready_features,
    replace_feature,
    save_manifest,
    serialize_manifest,
    unmet_dependencies,
)
from plan_guard.models import Feature, FeatureStatus
from plan_guard.utils.fs import FileSystemError


def _lines(*records: dict) -> str:
    return "\n".join(json.dumps(r) for r in records) + "\n"


class TestParseManifest:
    """Tests for parse_manifest()."""

    def test_preserves_order(self, make_record):
        content = _lines(make_record("F002"), make_record("F001"), make_record("F003"))

        features = parse_manifest(content)

        assert [f.id for f in features] == ["F002", "F001", "F003"]

    def test_skips_blank_lines(self, make_record):
        content = json.dumps(make_record("F001")) + "\n\n   \n" + json.dumps(make_record("F002"))

        features = parse_manifest(content)

        assert [f.id for f in features] == ["F001", "F002"]

    def test_empty_content(self):
        assert parse_manifest("") == []

    def test_invalid_json_reports_line_number(self, make_record):
        content = json.dumps(make_record("F001")) + "\n{not json\n"

        with pytest.raises(ManifestParseError) as exc_info:
            parse_manifest(content)

        assert exc_info.value.line == 2
        assert exc_info.value.exit_code == ExitCode.FATAL

    def test_non_object_line(self):
        with pytest.raises(ManifestParseError) as exc_info:
            parse_manifest('["F001"]\n')

        assert exc_info.value.line == 1

    @pytest.mark.parametrize("field", ["id", "title", "verification", "beads_id", "status"])
    def test_missing_required_field(self, make_record, field):
        record = make_record("F001")
        del record[field]

        with pytest.raises(ManifestValidationError) as exc_info:
            parse_manifest(_lines(record))

        assert exc_info.value.field == field

    def test_empty_verification_rejected(self, make_record):
        with pytest.raises(ManifestValidationError, match="verification"):
            parse_manifest(_lines(make_record("F001", verification="   ")))

    def test_unknown_status_rejected(self, make_record):
        with pytest.raises(ManifestValidationError, match="status"):
            parse_manifest(_lines(make_record("F001", status="done")))

    def test_duplicate_id_rejected(self, make_record):
        content = _lines(make_record("F001"), make_record("F001", beads_id="bd-other"))

        with pytest.raises(ManifestValidationError, match="duplicate"):
            parse_manifest(content)

    def test_shared_tracker_id_rejected(self, make_record):
        content = _lines(make_record("F001", beads_id="bd-1"), make_record("F002", beads_id="bd-1"))

        with pytest.raises(ManifestValidationError) as exc_info:
            parse_manifest(content)

        assert exc_info.value.field == "beads_id"
        assert exc_info.value.feature_id == "F002"

    def test_unknown_dependency_rejected(self, make_record):
        with pytest.raises(ManifestValidationError, match="unknown feature 'F999'"):
            parse_manifest(_lines(make_record("F001", depends_on=["F999"])))

    def test_self_dependency_rejected(self, make_record):
        with pytest.raises(ManifestValidationError, match="itself"):
            parse_manifest(_lines(make_record("F001", depends_on=["F001"])))

    def test_cycle_rejected(self, make_record):
        content = _lines(
            make_record("F001", depends_on=["F003"]),
            make_record("F002", depends_on=["F001"]),
            make_record("F003", depends_on=["F002"]),
        )

        with pytest.raises(ManifestValidationError, match="circular"):
            parse_manifest(content)

    def test_depends_on_must_be_list(self, make_record):
        record = make_record("F001")
        record["depends_on"] = "F000"

        with pytest.raises(ManifestValidationError, match="depends_on"):
            parse_manifest(_lines(record))

    def test_unknown_keys_are_preserved(self, make_record):
        record = make_record("F001", owner="alice", devops_id="AB#42")

        feature = parse_manifest(_lines(record))[0]

        assert feature.extra == {"owner": "alice"}
        assert feature.devops_id == "AB#42"
        assert feature.to_dict()["owner"] == "alice"

    def test_numeric_devops_id_rejected(self, make_record):
        with pytest.raises(ManifestValidationError) as exc_info:
            parse_manifest(_lines(make_record("F001", devops_id=42)))

        assert exc_info.value.field == "devops_id"

    def test_absent_optional_keys_stay_absent(self, make_record):
        record = make_record("F001")
        del record["file"]
        del record["description"]

        data = parse_manifest(_lines(record))[0].to_dict()

        assert "file" not in data
        assert "description" not in data
        assert "devops_id" not in data
        assert data["depends_on"] == []

    def test_explicit_null_devops_id_is_kept(self, make_record):
        feature = parse_manifest(_lines(make_record("F001", devops_id=None)))[0]

        assert feature.devops_id is None
        assert feature.with_status(FeatureStatus.COMPLETED).to_dict()["devops_id"] is None


class TestDecodeManifest:
    """Tests for manifests that are not valid UTF-8."""

    def test_names_first_bad_line(self, make_record):
        data = _lines(make_record("F001")).encode() + b'{"id": "F\xff002"}\n'

        with pytest.raises(ManifestParseError, match="line 2 is not valid UTF-8") as exc_info:
            decode_manifest(data)

        assert exc_info.value.line == 2
        assert exc_info.value.exit_code == ExitCode.FATAL

    def test_valid_utf8_passes_through(self):
        text = '{"title": "caf\u00e9"}\n'

        assert decode_manifest(text.encode()) == text


class TestFindDependencyCycle:
    """Tests for find_dependency_cycle()."""

    def _feature(self, fid, deps=()):
        return Feature(
            id=fid, title=fid, status=FeatureStatus.PENDING,
            verification="true", beads_id=f"bd-{fid}", depends_on=list(deps),
        )

    def test_dag_has_no_cycle(self):
        features = [self._feature("A"), self._feature("B", ["A"]), self._feature("C", ["A", "B"])]

        assert find_dependency_cycle(features) is None

    def test_reports_nodes_on_cycle(self):
        features = [self._feature("A"), self._feature("B", ["C"]), self._feature("C", ["B"])]

        assert sorted(find_dependency_cycle(features)) == ["B", "C"]


class TestManifestStore:
    """Tests for ManifestStore load/save."""

    def test_missing_manifest_loads_empty(self, tmp_path: Path):
        store = ManifestStore(tmp_path / "plan")

        assert store.exists() is False
        assert store.load() == []

    def test_save_is_byte_stable(self, write_manifest, make_record):
        plan = write_manifest([make_record("F001"), make_record("F002", depends_on=["F001"])])
        original = (plan / "manifest.jsonl").read_text()
        store = ManifestStore(plan)

        store.save(store.load())

        assert (plan / "manifest.jsonl").read_text() == original

    def test_save_rewrites_whole_file_in_order(self, write_manifest, make_record):
        plan = write_manifest([make_record("F001"), make_record("F002")])
        store = ManifestStore(plan)
        features = store.load()

        store.save(replace_feature(features, features[1].with_status(FeatureStatus.COMPLETED)))

        lines = (plan / "manifest.jsonl").read_text().splitlines()
        assert [json.loads(line)["id"] for line in lines] == ["F001", "F002"]
        assert json.loads(lines[1])["status"] == "completed"
        assert json.loads(lines[0])["status"] == "pending"

    def test_sparse_record_is_byte_stable(self, tmp_path: Path):
        plan = tmp_path / "plan"
        plan.mkdir()
        original = (
            '{"id":"F001","title":"Login","status":"pending",'
            '"verification":"true","beads_id":"bd-1","devops_id":null}\n'
        )
        (plan / "manifest.jsonl").write_text(original)
        store = ManifestStore(plan)

        store.save(store.load())

        assert (plan / "manifest.jsonl").read_text() == original

    def test_non_utf8_manifest_raises_parse_error(self, write_manifest, make_record):
        plan = write_manifest([make_record("F001")])
        with open(plan / "manifest.jsonl", "ab") as f:
            f.write(b"\xfe\n")

        with pytest.raises(ManifestParseError) as exc_info:
            ManifestStore(plan).load()

        assert exc_info.value.line == 2

    def test_unreadable_manifest_raises_read_error(self, write_manifest, make_record):
        plan = write_manifest([make_record("F001")])

        with patch("plan_guard.manifest_store.read_bytes", side_effect=FileSystemError("Permission denied")):
            with pytest.raises(ManifestReadError, match="Permission denied") as exc_info:
                ManifestStore(plan).load()

        assert exc_info.value.exit_code == ExitCode.FATAL

    def test_save_leaves_no_temp_files(self, write_manifest, make_record):
        plan = write_manifest([make_record("F001")])

        save_manifest(plan, load_manifest(plan))

        assert not [p.name for p in plan.iterdir() if p.suffix == ".tmp"]

    def test_write_failure_keeps_old_manifest(self, write_manifest, make_record):
        plan = write_manifest([make_record("F001")])
        before = (plan / "manifest.jsonl").read_bytes()
        store = ManifestStore(plan)
        features = store.load()

        with patch("plan_guard.manifest_store.safe_write", side_effect=OSError("disk full")):
            with pytest.raises(ManifestWriteError, match="disk full") as exc_info:
                store.save(features)

        assert exc_info.value.exit_code == ExitCode.FATAL
        assert (plan / "manifest.jsonl").read_bytes() == before

    def test_write_lock_timeout(self, write_manifest, make_record):
        plan = write_manifest([make_record("F001")])
        store = ManifestStore(plan)
        features = store.load()

        with patch("plan_guard.manifest_store.FileLock") as mock_lock:
            mock_lock.return_value.__enter__.side_effect = Timeout(str(plan / ".manifest.jsonl.lock"))
            with pytest.raises(ManifestWriteError, match="write lock"):
                store.save(features)

    def test_invalid_manifest_is_not_modified(self, write_manifest, make_record):
        plan = write_manifest([make_record("F001")])
        path = plan / "manifest.jsonl"
        path.write_text(path.read_text() + "garbage\n")
        before = path.read_bytes()

        with pytest.raises(ManifestParseError):
            ManifestStore(plan).load()

        assert path.read_bytes() == before

    def test_serialize_empty(self):
        assert serialize_manifest([]) == ""


class TestQueryHelpers:
    """Tests for the manifest query helpers."""

    def test_ready_features_respects_dependencies(self, make_record):
        features = parse_manifest(_lines(
            make_record("F001", status="completed"),
            make_record("F002", depends_on=["F001"]),
            make_record("F003", depends_on=["F002"]),
        ))

        assert [f.id for f in ready_features(features)] == ["F002"]

    def test_unmet_dependencies(self, make_record):
        features = parse_manifest(_lines(
            make_record("F001"),
            make_record("F002", depends_on=["F001"]),
        ))

        assert unmet_dependencies(features, features[1]) == ["F001"]

    def test_current_feature(self, make_record):
        features = parse_manifest(_lines(
            make_record("F001", status="completed"),
            make_record("F002", status="in_progress"),
        ))

        assert current_feature(features).id == "F002"

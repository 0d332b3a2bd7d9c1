import json
from datetime import datetime

from scavenger_consolidator.session_log import (
    LOG_FILE,
    METADATA_FILE,
    SUMMARY_FILE,
    NoopSessionLogger,
    SessionLogger,
    format_address_label,
    format_timestamp,
    open_session_logger,
    sanitize_custom_label,
)


def test_address_label_is_shortened():
    label = format_address_label("addr1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh")
    assert label == "addr1qxy2...x0wlh"


def test_short_address_label_kept():
    assert format_address_label("addr1abc") == "addr1abc"


def test_empty_address_label_falls_back():
    assert format_address_label("") == "unknown-a...dress"
    assert format_address_label("!!!") == "unknown-a...dress"


def test_custom_label_sanitized():
    assert sanitize_custom_label('  my <big>  run: "one"/two ') == "my-big-run-onetwo"
    assert sanitize_custom_label("   ") is None
    assert sanitize_custom_label(None) is None
    assert len(sanitize_custom_label("x" * 200)) == 80


def test_timestamp_format():
    assert format_timestamp(datetime(2025, 11, 3, 7, 5, 9)) == "20251103-070509"


def test_open_creates_layout_and_metadata(tmp_path):
    slog = open_session_logger("addr1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh", {"total_addresses": 3},
                               root=tmp_path)
    assert isinstance(slog, SessionLogger)
    assert slog.session_dir.parent == tmp_path / "addr1qxy2...x0wlh"

    meta = json.loads((slog.session_dir / METADATA_FILE).read_text())
    assert meta["label"] == "addr1qxy2...x0wlh"
    assert meta["total_addresses"] == 3
    assert "created_at" in meta


def test_custom_label_wins(tmp_path):
    slog = open_session_logger("addr1qxyz", custom_label="Cold wallet", root=tmp_path)
    assert slog.label == "Cold-wallet"
    meta = json.loads((slog.session_dir / METADATA_FILE).read_text())
    assert meta["custom_label"] == "Cold wallet"


def test_metadata_updates_merge(tmp_path):
    slog = open_session_logger("addr1qxyz", {"status": "created"}, root=tmp_path)
    created_at = slog.metadata["created_at"]

    slog.update_metadata(status="completed", successful=2)
    slog.update_metadata({"failed": 1})

    meta = json.loads((slog.session_dir / METADATA_FILE).read_text())
    assert meta["status"] == "completed"
    assert meta["successful"] == 2
    assert meta["failed"] == 1
    assert meta["created_at"] == created_at


def test_log_summary_and_artifacts(tmp_path):
    slog = open_session_logger("addr1qxyz", root=tmp_path / "logs")
    slog.log("-> POST something")
    slog.write_summary(["total: 3"])
    src = tmp_path / "result.json"
    src.write_text("{}")
    slog.copy_artifact(src, "consolidation-result.json")
    slog.copy_artifact(tmp_path / "missing.json", "missing.json")
    slog.write_artifact("batch-data.json", [{"sourceIndex": 1}])

    log_text = (slog.session_dir / LOG_FILE).read_text()
    assert "-> POST something" in log_text
    assert "Source not found" in log_text
    assert (slog.session_dir / SUMMARY_FILE).read_text().startswith("total: 3\n")
    assert (slog.session_dir / "consolidation-result.json").read_text() == "{}"
    assert not (slog.session_dir / "missing.json").exists()
    assert json.loads((slog.session_dir / "batch-data.json").read_text()) == [{"sourceIndex": 1}]


def test_repeated_runs_get_distinct_folders(tmp_path):
    first = open_session_logger("addr1qxyz", root=tmp_path)
    second = open_session_logger("addr1qxyz", root=tmp_path)
    assert first.session_dir != second.session_dir
    assert first.session_dir.parent == second.session_dir.parent


def test_unusable_root_degrades_to_noop(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")

    slog = open_session_logger("addr1qxyz", {"a": 1}, root=blocker)

    assert isinstance(slog, NoopSessionLogger)
    assert slog.enabled is False
    slog.log("ignored")
    slog.write_summary(["x"])
    slog.update_metadata(status="done")
    slog.copy_artifact(blocker, "x")
    slog.write_artifact("x.json", {})

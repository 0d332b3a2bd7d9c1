import json
from pathlib import Path

import pytest

from scavenger_consolidator import cli
from scavenger_consolidator.client import DonationClient
from scavenger_consolidator.config import DEFAULT_API_URL, Settings
from scavenger_consolidator.models import ConsolidationRecord
from scavenger_consolidator.records import RecordStore

from conftest import DEST, FakeResponse, FakeSession


@pytest.fixture
def fake_client(monkeypatch):
    session = FakeSession({
        "addr1qa": FakeResponse(200, {"solutions_consolidated": 6, "message": "ok"}),
        "addr1qb": FakeResponse(409, {"message": "Already donated"}),
        "addr1qc": FakeResponse(502, "Bad Gateway"),
    })

    def factory(api_url, **kwargs):
        kwargs.update(session=session, sleep=lambda _: None)
        return DonationClient(api_url, **kwargs)

    monkeypatch.setattr(cli, "DonationClient", factory)
    return session


def test_submit_batch_writes_result_artifact(tmp_path, fake_client, capsys):
    batch = tmp_path / "batch-data.json"
    batch.write_text(json.dumps([
        {"sourceAddress": "addr1qa", "signature": "s1", "sourceIndex": 0},
        {"sourceAddress": "addr1qb", "signature": "s2", "sourceIndex": 1},
        {"sourceAddress": "addr1qc", "signature": "s3", "sourceIndex": 2},
    ]))

    code = cli.main(["--data-root", str(tmp_path / "data"), "submit-batch", "--dest", DEST,
                     "--batchfile", str(batch)])

    assert code == 1
    payload = json.loads((tmp_path / "data" / "consolidation-result.json").read_text())
    assert payload["destinationAddress"] == DEST
    assert payload["summary"] == {"total": 3, "successful": 1, "skipped": 1, "errors": 1, "totalSolutions": 6}
    assert payload["results"][1]["alreadyDonated"] is True
    assert payload["results"][2]["error"] == "502"
    assert fake_client.posted_sources == ["addr1qa", "addr1qb", "addr1qc"]
    assert "Total Solutions:        6" in capsys.readouterr().out


def test_submit_single_already_donated_exits_zero(tmp_path, fake_client):
    result_file = tmp_path / "out.json"
    code = cli.main(["--data-root", str(tmp_path), "submit", "--source", "addr1qb", "--dest", DEST,
                     "--signature", "abcd", "--result-file", str(result_file)])
    assert code == 0
    payload = json.loads(result_file.read_text())
    assert payload == {"success": False, "error": "Already donated", "alreadyDonated": True,
                       "sourceAddress": "addr1qb", "destinationAddress": DEST}


def test_submit_batch_rejects_empty_batch(tmp_path, fake_client, capsys):
    batch = tmp_path / "batch.json"
    batch.write_text("[]")
    with pytest.raises(SystemExit) as exc:
        cli.main(["--data-root", str(tmp_path), "submit-batch", "--dest", DEST, "--batchfile", str(batch)])
    assert exc.value.code == 1
    assert "at least one address" in capsys.readouterr().err


def test_history_lists_records(tmp_path, capsys):
    store = RecordStore(Settings(data_root=tmp_path).records_path)
    store.append(ConsolidationRecord(timestamp="2025-11-01T00:00:00Z", source_address="addr1qa" + "x" * 30,
                                     destination_address=DEST, destination_mode="wallet",
                                     solutions_consolidated=6, status="success", message="ok"))

    assert cli.main(["--data-root", str(tmp_path), "history"]) == 0
    out = capsys.readouterr().out
    assert "success" in out and "ok" in out


def test_parse_indices():
    assert cli.parse_indices("0,2, 5-7") == [0, 2, 5, 6, 7]
    assert cli.parse_indices(None) is None
    with pytest.raises(SystemExit):
        cli.parse_indices("a")


def test_parse_indices_drops_repeats(capsys):
    assert cli.parse_indices("0-2,1, 0") == [0, 1, 2]
    assert "duplicate indices" in capsys.readouterr().err


def test_settings_from_env():
    settings = Settings.from_env({
        "SCAVENGER_API_URL": "https://staging.example",
        "SCAVENGER_REQUEST_DELAY": "0.25",
        "SCAVENGER_DATA_ROOT": "/tmp/night",
    })
    assert settings.api_url == "https://staging.example"
    assert settings.inter_request_delay == 0.25
    assert settings.records_path == Path("/tmp/night/records/consolidations.jsonl")
    assert Settings.from_env({}).api_url == DEFAULT_API_URL
    with pytest.raises(ValueError):
        Settings.from_env({"SCAVENGER_REQUEST_TIMEOUT": "soon"})

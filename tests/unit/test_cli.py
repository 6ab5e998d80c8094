"""Unit tests for the command line entrypoint."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from sequence_engine.engine.main import main


@pytest.fixture(autouse=True)
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ENGINE_STATE_PATH", str(tmp_path / "state"))
    monkeypatch.setenv("LOG_LEVEL", "ERROR")
    monkeypatch.delenv("ENGINE_GATEWAY_URL", raising=False)
    monkeypatch.delenv("ENGINE_PERMANENT_FAILURE_POLICY", raising=False)

    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield tmp_path
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def _write_json(path: Path, payload: object) -> str:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


def _create_sequence(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> str:
    definition = _write_json(
        tmp_path / "sequence.json",
        {
            "name": "Welcome",
            "trigger": {"type": "new_lead"},
            "steps": [
                {"index": 0, "type": "send_email", "content": {"subject": "Hi"}},
                {"index": 1, "type": "send_sms", "delay_hours": 24},
            ],
        },
    )
    assert main(["create-sequence", "--tenant", "t1", "--file", definition, "--activate"]) == 0
    out = capsys.readouterr().out
    assert "(active)" in out
    return out.split()[2].rstrip(":")


def test_create_enroll_and_list(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    sequence_id = _create_sequence(cli_env, capsys)

    assert main(["enroll", "--tenant", "t1", "--sequence", sequence_id, "--contacts", "c1, c2"]) == 0
    out = capsys.readouterr().out
    assert "c1: enrolled" in out
    assert "c2: enrolled" in out

    assert main(["list-enrollments", "--tenant", "t1", "--status", "active"]) == 0
    rows = json.loads(capsys.readouterr().out)
    assert sorted(r["contact_id"] for r in rows) == ["c1", "c2"]
    assert all("snapshot" not in r for r in rows)


def test_enroll_exits_3_when_all_duplicates(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    sequence_id = _create_sequence(cli_env, capsys)
    args = ["enroll", "--tenant", "t1", "--sequence", sequence_id, "--contacts", "c1"]

    assert main(args) == 0
    assert main(args) == 3
    assert main([*args, "--force"]) == 0


def test_ingest_event(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    sequence_id = _create_sequence(cli_env, capsys)
    event = _write_json(
        cli_env / "event.json", {"type": "new_lead", "tenant_id": "t1", "contact_id": "c7"}
    )

    assert main(["ingest-event", "--file", event]) == 0
    assert f"{sequence_id}: enrolled" in capsys.readouterr().out


def test_unknown_sequence_exits_1(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["activate", "--tenant", "t1", "--sequence", "missing"]) == 1
    assert "not found" in capsys.readouterr().err


def test_invalid_definition_exits_1(cli_env: Path) -> None:
    definition = _write_json(
        cli_env / "bad.json",
        {"name": "Bad", "steps": [{"index": 0, "type": "fax"}]},
    )

    assert main(["create-sequence", "--tenant", "t1", "--file", definition]) == 1


def test_sweep_without_gateway_exits_1(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["sweep"]) == 1
    assert "ENGINE_GATEWAY_URL" in capsys.readouterr().err


def test_configuration_error_exits_2(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("ENGINE_PERMANENT_FAILURE_POLICY", "ignore")

    assert main(["sweep"]) == 2
    assert "Configuration error" in capsys.readouterr().err

"""Summary: CLI tests for parsing and the fixture polling workflow.

Importance: Ensures the local entry point drives the same pipeline as the API.
Alternatives: Test the CLI only by running it in a shell.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from flowhub.cli import build_parser, run_cli


REPO_ROOT = Path(__file__).resolve().parents[1]


def test_parser_requires_a_poll_target() -> None:
    parser = build_parser()
    args = parser.parse_args(["poll-once", "--account-id", "3"])
    assert args.account_id == 3
    assert args.fixture is None
    with pytest.raises(SystemExit):
        parser.parse_args(["poll-once"])
    assert parser.parse_args(["convert", "1", "2"]).notification_ids == [1, 2]


def test_poll_fixture_and_list_notifications(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    """Summary: Verify a fixture poll stores notifications for actionable mail only.

    Importance: The fixture path is the quickest way to try the pipeline locally.
    Alternatives: Require a live Gmail connection.
    """

    (tmp_path / "config").mkdir()
    shutil.copy(REPO_ROOT / "config" / "defaults.json", tmp_path / "config" / "defaults.json")
    monkeypatch.chdir(tmp_path)

    run_cli(["poll-once", "--fixture", str(REPO_ROOT / "data" / "mock_messages.json")])
    assert "Account 1: idle" in capsys.readouterr().out

    run_cli(["list-notifications"])
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 3
    assert any("Priya Raman" in line for line in lines)
    assert not any("Accounts" in line for line in lines)

    run_cli(["convert", "1"])
    assert "Notification 1: created 2 tasks." in capsys.readouterr().out

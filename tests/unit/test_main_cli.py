# SPDX-License-Identifier: Apache-2.0
"""Unit tests for the command-line entry point."""

import functools
import json
import logging
import queue
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

import main
from utils.http_client import AsyncRetryableHttpClient


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    monkeypatch.setattr("pathlib.Path.home", lambda: tmp_path / "home")
    for name in ("CALBRIDGE_RELAY_URL", "CALBRIDGE_GOOGLE_CLIENT_ID", "CALBRIDGE_OUTLOOK_CLIENT_ID"):
        monkeypatch.delenv(name, raising=False)
    yield
    root = logging.getLogger("calbridge")
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        main.build_parser().parse_args([])


def test_parser_rejects_unknown_provider():
    with pytest.raises(SystemExit):
        main.build_parser().parse_args(["connect", "yahoo"])


def test_status_lists_providers(tmp_path, capsys):
    exit_code = main.main(["--config-dir", str(tmp_path / "cfg"), "status"])

    out = capsys.readouterr().out
    assert exit_code == 0
    assert "Google Calendar: not connected" in out
    assert "Outlook Calendar: not connected" in out


def test_notes_commands(tmp_path, capsys):
    config_dir = str(tmp_path / "cfg")

    assert main.main(["--config-dir", config_dir, "link", "evt-1", "notes-1", "--provider", "google"]) == 0
    assert main.main(["--config-dir", config_dir, "notes", "evt-1"]) == 0
    assert main.main(["--config-dir", config_dir, "find-event", "notes-1"]) == 0
    assert main.main(["--config-dir", config_dir, "unlink", "evt-1"]) == 0
    assert main.main(["--config-dir", config_dir, "notes", "evt-1"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "Linked notes notes-1 to event evt-1.",
        "notes-1",
        "evt-1 [google]",
        "Link removed.",
        "No notes linked.",
    ]


def test_connect_without_client_id_reports_error(tmp_path, capsys):
    exit_code = main.main(["--config-dir", str(tmp_path / "cfg"), "connect", "google"])

    assert exit_code == 1
    assert "Calendar is not configured" in capsys.readouterr().err


def test_events_with_no_accounts(tmp_path, capsys):
    exit_code = main.main(["--config-dir", str(tmp_path / "cfg"), "events", "--json"])

    assert exit_code == 0
    assert '"events": []' in capsys.readouterr().out


class PastedLines:
    """Stand-in for stdin that yields lines once they are queued."""

    def __init__(self):
        self.lines = queue.Queue()

    def readline(self):
        try:
            return self.lines.get(timeout=5)
        except queue.Empty:
            return ""


def test_connect_outlook_with_pasted_redirect(tmp_path, capsys, monkeypatch):
    config_dir = str(tmp_path / "cfg")
    stdin = PastedLines()
    relay_bodies = []

    def browser(url):
        query = parse_qs(urlsplit(url).query)
        assert query["redirect_uri"] == ["calbridge://auth"]
        stdin.lines.put("not a redirect\n")
        stdin.lines.put(f"calbridge://auth?code=pasted-code&state={query['state'][0]}\n")
        return True

    def relay(request):
        relay_bodies.append(json.loads(request.content))
        return httpx.Response(200, json={
            "access_token": "outlook-access",
            "refresh_token": "outlook-refresh",
            "expires_in": 3600,
            "scope": "Calendars.Read offline_access",
            "token_type": "Bearer",
        })

    monkeypatch.setenv("CALBRIDGE_OUTLOOK_CLIENT_ID", "outlook-client")
    monkeypatch.setattr("webbrowser.open", browser)
    monkeypatch.setattr("sys.stdin", stdin)
    monkeypatch.setattr(
        "core.calendar.manager.AsyncRetryableHttpClient",
        functools.partial(AsyncRetryableHttpClient, transport=httpx.MockTransport(relay)),
    )

    assert main.main(["--config-dir", config_dir, "connect", "outlook"]) == 0

    captured = capsys.readouterr()
    assert "paste the calbridge:// address" in captured.out
    assert "Connected Outlook Calendar." in captured.out
    assert "Expected an address starting with calbridge://" in captured.err
    assert relay_bodies[0]["code"] == "pasted-code"
    assert relay_bodies[0]["redirect_uri"] == "calbridge://auth"

    assert main.main(["--config-dir", config_dir, "status"]) == 0
    assert "Outlook Calendar: connected" in capsys.readouterr().out

"""
tests/test_cli.py – `flask init` and `flask mood …`
"""
from __future__ import annotations

import pytest

from studionotes import site
from studionotes.heatmap import HttpMoodTransport
from studionotes.site import app

from test_transport import BrokenSession, FlaskSession


@pytest.fixture
def runner():
    return app.test_cli_runner()


def test_init_is_idempotent(runner):
    result = runner.invoke(args=["init"])
    assert result.exit_code == 0
    assert "Database ready." in result.output


def test_mood_set_and_list(runner):
    result = runner.invoke(args=["mood", "set", "2032-01-02", "--mood", "calm", "--note", "cli"])
    assert result.exit_code == 0, result.output
    assert "2032-01-02  Calm 2  cli" in result.output

    result = runner.invoke(args=["mood", "set", "2032-01-02", "--intensity", "3"])
    assert "2032-01-02  Calm 3  cli" in result.output     # merged onto the stored entry

    result = runner.invoke(args=["mood", "list", "--year", "2032"])
    assert result.exit_code == 0
    assert result.output.splitlines() == ["2032-01-02  calm     3  cli"]


def test_mood_set_defaults_for_new_day(runner):
    result = runner.invoke(args=["mood", "set", "2032-02-03"])
    assert result.exit_code == 0
    assert "2032-02-03  Joy 2" in result.output


def test_mood_set_rejects_bad_input(runner):
    assert runner.invoke(args=["mood", "set", "2032-02-30"]).exit_code == 2
    assert runner.invoke(args=["mood", "set", "2032-02-03", "--mood", "ennui"]).exit_code == 2
    assert runner.invoke(args=["mood", "set", "2032-02-03", "--intensity", "4"]).exit_code == 2


def test_mood_set_remote(runner, monkeypatch):
    monkeypatch.setenv("ADMIN_PASSCODE", "cli-remote")
    # no `with`: a preserved request context would outlive the command's own
    c = app.test_client()
    c.environ_base["REMOTE_ADDR"] = "10.8.0.1"
    monkeypatch.setattr(
        site,
        "HttpMoodTransport",
        lambda url, passphrase=None: HttpMoodTransport(
            url, session=FlaskSession(c), passphrase=passphrase
        ),
    )
    result = runner.invoke(
        args=["mood", "set", "2032-03-04", "--mood", "sadness", "--remote", "http://site.test"]
    )
    assert result.exit_code == 0, result.output
    assert "2032-03-04  Sad 2" in result.output

    listed = runner.invoke(args=["mood", "list", "--year", "2032"]).output
    assert "2032-03-04  sadness" in listed


def test_mood_set_remote_failure(runner, monkeypatch):
    monkeypatch.setattr(
        site,
        "HttpMoodTransport",
        lambda url, passphrase=None: HttpMoodTransport(url, session=BrokenSession()),
    )
    result = runner.invoke(args=["mood", "set", "2032-03-05", "--remote", "http://down.test"])
    assert result.exit_code == 1
    assert "GET /api/moods failed" in result.output

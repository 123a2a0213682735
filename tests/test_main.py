"""Tests for the command line entry point."""

from __future__ import annotations

from unittest.mock import patch

from conftest import FakeGateway, at, make_thread

from fansync.__main__ import _roster
from fansync.errors import AuthError


async def test_roster_prints_whales_first(capsys):
    gateway = FakeGateway()
    gateway.threads["cr"] = [
        make_thread("x", ltv=0, unread=5, last_at=at(100), handle="xavier"),
        make_thread("y", ltv=150_000, unread=0, last_at=at(1), handle="yolanda"),
    ]
    with patch("fansync.gateway.HttpMessagingGateway.from_settings", return_value=gateway):
        assert await _roster("cr") == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("whale")
    assert "@yolanda" in lines[0]
    assert "@xavier" in lines[1]
    assert gateway.closed


async def test_roster_reports_gateway_error(capsys):
    gateway = FakeGateway(thread_errors=[AuthError("expired")])
    with patch("fansync.gateway.HttpMessagingGateway.from_settings", return_value=gateway):
        assert await _roster("cr") == 1

    assert "auth" in capsys.readouterr().err
    assert gateway.closed

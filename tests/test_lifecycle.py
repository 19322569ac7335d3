"""
tests/test_lifecycle.py -- App wiring outside the request chain.

Covers:
  - CORS preflight allows the browser headers and the crmctl credential headers
  - the session gc loop keeps running after a failed pass
  - the gc loop drops expired sessions from a real session store
"""

from __future__ import annotations

import asyncio
import logging
import time
from types import SimpleNamespace

import pytest
from conftest import make_client, make_manager

from api.main import _gc_loop
from store.sessions import Session


def test_cors_preflight_allows_browser_and_credential_headers() -> None:
    manager = make_manager("cors")
    with make_client(manager, cors=True) as client:
        resp = client.options(
            "/api/accounts",
            headers={
                "Origin": "https://crm.example.com",
                "Access-Control-Request-Method": "GET",
                "Access-Control-Request-Headers": "Origin, X-Requested-With, Accept, X-Access-Token",
            },
        )
    manager.close()
    assert resp.status_code == 200
    allowed = resp.headers["access-control-allow-headers"].lower()
    for header in ("origin", "x-requested-with", "content-type", "accept", "x-access-token", "x-service-key"):
        assert header in allowed


async def _run_until(task: asyncio.Task, done, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not done():
        if task.done() or time.monotonic() > deadline:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def test_gc_loop_survives_a_failed_pass(caplog) -> None:
    calls: list[int] = []

    def gc_sessions() -> int:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("session backend hiccup")
        return 2

    app = SimpleNamespace(state=SimpleNamespace(manager=SimpleNamespace(gc_sessions=gc_sessions)))

    async def scenario() -> None:
        task = asyncio.create_task(_gc_loop(app, 0))
        await _run_until(task, lambda: len(calls) >= 3)

    with caplog.at_level(logging.INFO, logger="crmctl.api"):
        asyncio.run(scenario())

    assert len(calls) >= 3
    assert "Session gc failed" in caplog.text
    assert "removed 2 expired entries" in caplog.text


def test_gc_loop_removes_expired_sessions() -> None:
    manager = make_manager("gcloop")
    sessions = manager.sessions
    expired = Session(session_id="expired-session-0001", data={"username": "someone"})
    live = Session(session_id="live-session-000001", data={"username": "someone"})
    sessions.save(expired)
    sessions.save(live)
    # Backdate one index entry so the next gc pass treats it as expired.
    sessions.r.zadd("crmctl:session-index", {expired.session_id: time.time() - 1})

    app = SimpleNamespace(state=SimpleNamespace(manager=manager))

    async def scenario() -> None:
        task = asyncio.create_task(_gc_loop(app, 0))
        await _run_until(task, lambda: sessions.load(expired.session_id) is None)

    asyncio.run(scenario())

    assert sessions.load(expired.session_id) is None
    assert sessions.load(live.session_id) is not None
    manager.close()

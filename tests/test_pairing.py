"""Tests for the device pairing exchange, server, and client."""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from taskbridge.errors import (
    InvalidCredentialsError,
    PairingTimeoutError,
    SessionNotFoundError,
    TransportError,
)
from taskbridge.pairing import (
    NOT_FOUND_MESSAGE,
    SESSION_TTL,
    InMemorySessionStore,
    PairingClient,
    PairingExchange,
    PairingServer,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def exchange(clock):
    return PairingExchange(InMemorySessionStore(clock), "https://taskbridge.test", clock=clock)


class TestExchange:
    """Session lifecycle."""

    def test_create_returns_auth_url(self, exchange):
        sid, url = exchange.create_session()
        assert url == f"https://taskbridge.test/auth/app-login?session={sid}"
        session = exchange.poll(sid)
        assert session.authorized is False
        assert session.token is None

    def test_ttl_is_ten_minutes(self):
        assert SESSION_TTL == timedelta(minutes=10)

    def test_live_until_ttl(self, exchange, clock):
        sid, _ = exchange.create_session()
        clock.now += SESSION_TTL
        assert exchange.poll(sid).id == sid

    def test_expired_is_not_found(self, exchange, clock):
        sid, _ = exchange.create_session()
        clock.now += SESSION_TTL + timedelta(seconds=1)
        with pytest.raises(SessionNotFoundError):
            exchange.poll(sid)

    def test_unknown_is_not_found(self, exchange):
        with pytest.raises(SessionNotFoundError) as exc_info:
            exchange.poll("nope")
        assert str(exc_info.value) == NOT_FOUND_MESSAGE

    def test_authorize_issues_token(self, exchange):
        sid, _ = exchange.create_session()
        session = exchange.authorize(sid)
        assert session.authorized is True
        assert session.token
        assert session.user_id
        assert exchange.poll(sid).poll_payload()["token"] == session.token

    def test_authorize_is_once(self, exchange):
        sid, _ = exchange.create_session()
        first = exchange.authorize(sid, user_id="u1")
        second = exchange.authorize(sid, user_id="u2")
        assert second.token == first.token
        assert second.user_id == "u1"

    def test_authorize_expired(self, exchange, clock):
        sid, _ = exchange.create_session()
        clock.now += timedelta(minutes=11)
        with pytest.raises(SessionNotFoundError):
            exchange.authorize(sid)

    def test_login_requires_both_fields(self, exchange):
        sid, _ = exchange.create_session()
        assert exchange.login(sid, "a@b.c", "pw") is True
        with pytest.raises(InvalidCredentialsError):
            exchange.login(sid, "a@b.c", "")

    def test_expired_session_removed_lazily(self, clock):
        store = InMemorySessionStore(clock)
        ex = PairingExchange(store, "https://x.test", clock=clock)
        ex.create_session()
        assert len(store) == 1
        clock.now += timedelta(minutes=20)
        assert len(store) == 1
        ex.create_session()
        assert len(store) == 2


@pytest.fixture
def server(exchange):
    srv = PairingServer(exchange, port=0)
    srv.start()
    yield srv
    srv.stop()


def _request(server, method, path, body=None):
    data = json.dumps(body).encode() if body is not None else None
    req = urllib.request.Request(
        f"http://127.0.0.1:{server.port}{path}", data=data, method=method,
        headers={"Content-Type": "application/json"},
    )
    try:
        with urllib.request.urlopen(req, timeout=2) as resp:
            return resp.status, resp.read()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read()


class TestServer:
    """HTTP endpoints."""

    def test_full_handshake(self, server):
        status, body = _request(server, "POST", "/auth/session")
        assert status == 200
        created = json.loads(body)
        sid = created["sessionId"]
        assert created["authUrl"].endswith(f"/auth/app-login?session={sid}")

        status, body = _request(server, "GET", f"/auth/session?session={sid}")
        assert json.loads(body)["authorized"] is False

        status, _ = _request(server, "POST", f"/auth/app-login?session={sid}", {"action": "authorize"})
        assert status == 200

        status, body = _request(server, "GET", f"/auth/session?session={sid}")
        polled = json.loads(body)
        assert polled["authorized"] is True
        assert polled["token"]

    def test_poll_unknown(self, server):
        status, body = _request(server, "GET", "/auth/session?session=missing")
        assert status == 404
        assert json.loads(body)["error"] == NOT_FOUND_MESSAGE

    def test_poll_expired_same_answer(self, server, exchange, clock):
        sid, _ = exchange.create_session()
        clock.now += timedelta(minutes=11)
        status, body = _request(server, "GET", f"/auth/session?session={sid}")
        assert status == 404
        assert json.loads(body)["error"] == NOT_FOUND_MESSAGE

    def test_poll_requires_session(self, server):
        status, _ = _request(server, "GET", "/auth/session")
        assert status == 400

    def test_authorize_unknown_session(self, server):
        status, _ = _request(server, "POST", "/auth/session?session=missing", {"action": "authorize"})
        assert status == 404

    def test_login_action(self, server, exchange):
        sid, _ = exchange.create_session()
        status, _ = _request(server, "POST", f"/auth/session?session={sid}",
                             {"action": "login", "email": "", "password": ""})
        assert status == 400
        status, body = _request(server, "POST", f"/auth/session?session={sid}",
                                {"action": "login", "email": "a@b.c", "password": "pw"})
        assert status == 200
        assert json.loads(body)["loggedIn"] is True

    def test_unknown_action(self, server, exchange):
        sid, _ = exchange.create_session()
        status, _ = _request(server, "POST", f"/auth/session?session={sid}", {"action": "dance"})
        assert status == 400

    def test_approval_page(self, server, exchange):
        sid, _ = exchange.create_session()
        status, body = _request(server, "GET", f"/auth/app-login?session={sid}")
        assert status == 200
        assert b"Authorize" in body

    def test_method_not_allowed(self, server):
        status, _ = _request(server, "DELETE", "/auth/session")
        assert status == 405


def _resp(status, body=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = body or {}
    return resp


class TestClient:
    """Device-side polling."""

    def test_wait_returns_token(self):
        session = MagicMock()
        session.request.side_effect = [
            _resp(200, {"authorized": False, "token": None}),
            _resp(200, {"authorized": True, "token": "tok", "userId": "u1"}),
        ]
        client = PairingClient("https://x.test", session=session)
        result = client.wait_for_token("sid", sleep=lambda s: None)
        assert result["token"] == "tok"

    def test_wait_session_gone(self):
        session = MagicMock()
        session.request.return_value = _resp(404, {"error": NOT_FOUND_MESSAGE})
        client = PairingClient("https://x.test", session=session)
        with pytest.raises(SessionNotFoundError):
            client.wait_for_token("sid", sleep=lambda s: None)

    def test_wait_times_out(self):
        session = MagicMock()
        session.request.return_value = _resp(200, {"authorized": False})
        ticks = iter([0.0, 5.0, 11.0])
        client = PairingClient("https://x.test", session=session)
        with pytest.raises(PairingTimeoutError):
            client.wait_for_token("sid", timeout=10, clock=lambda: next(ticks), sleep=lambda s: None)

    def test_start_non_json_body(self):
        session = MagicMock()
        resp = _resp(200)
        resp.json.side_effect = ValueError("Expecting value")
        session.request.return_value = resp
        client = PairingClient("https://x.test", session=session)
        with pytest.raises(TransportError, match="not JSON"):
            client.start()

    def test_start_missing_fields(self):
        session = MagicMock()
        session.request.return_value = _resp(200, {"sessionId": "sid"})
        client = PairingClient("https://x.test", session=session)
        with pytest.raises(TransportError, match="lacks sessionId/authUrl"):
            client.start()

    def test_poll_non_json_body(self):
        session = MagicMock()
        resp = _resp(200)
        resp.json.side_effect = ValueError("Expecting value")
        session.request.return_value = resp
        client = PairingClient("https://x.test", session=session)
        with pytest.raises(TransportError, match="not JSON"):
            client.poll("sid")

    def test_poll_non_object_body(self):
        session = MagicMock()
        session.request.return_value = _resp(200, ["authorized"])
        client = PairingClient("https://x.test", session=session)
        with pytest.raises(TransportError, match="JSON object"):
            client.poll("sid")

    def test_against_live_server(self, server, exchange):
        client = PairingClient(f"http://127.0.0.1:{server.port}")
        sid, url = client.start()
        assert sid in url
        exchange.authorize(sid, user_id="u1")
        result = client.wait_for_token(sid, sleep=lambda s: None)
        assert result["userId"] == "u1"

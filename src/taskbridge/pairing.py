"""
Device pairing: a short-lived, browser-approved credential handshake.

    device                         service                      browser
      | POST /auth/session  --------> create {authorized: false}
      | <-------- {sessionId, authUrl}
      |                                      <---- POST authorize (authUrl)
      | GET /auth/session?session=ID --> {authorized, token, userId}

A session lives for ten minutes. Expiry is checked lazily when a
session is looked up; nothing sweeps the store. A poll for a session
that never existed and one for a session that timed out get the same
"not found" answer.

The store sits behind ``SessionStore`` so a shared cache can replace the
in-process dict without touching the exchange.
"""

from __future__ import annotations

import json
import logging
import secrets
import threading
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Optional
from urllib.parse import parse_qs, urlsplit

import requests
from pydantic import BaseModel, Field

from .errors import (
    InvalidCredentialsError,
    PairingTimeoutError,
    SessionNotFoundError,
    TransportError,
)

logger = logging.getLogger("taskbridge.pairing")

SESSION_TTL = timedelta(minutes=10)
DEFAULT_PAIRING_PORT = 7843
NOT_FOUND_MESSAGE = "Session not found or expired"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Session model and store
# ---------------------------------------------------------------------------


class AuthSession(BaseModel):
    """One pairing session."""

    id: str
    authorized: bool = False
    user_id: Optional[str] = None
    token: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime = Field(default_factory=lambda: _utcnow() + SESSION_TTL)

    def is_expired(self, now: datetime) -> bool:
        """True once ``now`` is past the expiry time."""
        return now > self.expires_at

    def poll_payload(self) -> dict:
        """Body returned to a polling device."""
        return {
            "authorized": self.authorized,
            "token": self.token,
            "userId": self.user_id,
        }


class SessionStore(ABC):
    """Keyed storage for pairing sessions with lazy TTL expiry."""

    @abstractmethod
    def create(self, session: AuthSession) -> None:
        """Store a new session."""

    @abstractmethod
    def get(self, session_id: str) -> Optional[AuthSession]:
        """Return a live session, or None if absent or expired.

        An expired session is removed as a side effect.
        """

    @abstractmethod
    def update(self, session: AuthSession) -> None:
        """Replace a stored session."""

    @abstractmethod
    def delete(self, session_id: str) -> None:
        """Remove a session; missing ids are ignored."""


class InMemorySessionStore(SessionStore):
    """Process-local session store.

    Args:
        clock: Time source used for expiry checks.
    """

    def __init__(self, clock: Clock = _utcnow):
        self._clock = clock
        self._sessions: dict[str, AuthSession] = {}

    def create(self, session: AuthSession) -> None:
        self._sessions[session.id] = session

    def get(self, session_id: str) -> Optional[AuthSession]:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            self._sessions.pop(session_id, None)
            logger.debug("Pairing session %s expired", session_id)
            return None
        return session

    def update(self, session: AuthSession) -> None:
        self._sessions[session.id] = session

    def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)


# ---------------------------------------------------------------------------
# Exchange
# ---------------------------------------------------------------------------


class PairingExchange:
    """Create, approve, and poll pairing sessions.

    Args:
        store: Session storage.
        base_url: Public URL the browser uses to reach the approval page.
        clock: Time source; must match the store's.
        ttl: Session lifetime.
    """

    def __init__(
        self,
        store: SessionStore,
        base_url: str,
        clock: Clock = _utcnow,
        ttl: timedelta = SESSION_TTL,
    ):
        self._store = store
        self._base_url = base_url.rstrip("/")
        self._clock = clock
        self._ttl = ttl

    def create_session(self) -> tuple[str, str]:
        """Start a session.

        Returns:
            (session_id, auth_url). The URL embeds the session id.
        """
        now = self._clock()
        session = AuthSession(
            id=secrets.token_urlsafe(16),
            created_at=now,
            expires_at=now + self._ttl,
        )
        self._store.create(session)
        logger.info("Pairing session %s created", session.id)
        return session.id, self.auth_url(session.id)

    def auth_url(self, session_id: str) -> str:
        """Approval page URL for a session."""
        return f"{self._base_url}/auth/app-login?session={session_id}"

    def poll(self, session_id: str) -> AuthSession:
        """Current state of a session.

        Raises:
            SessionNotFoundError: If the session is absent or expired.
        """
        session = self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def authorize(self, session_id: str, user_id: Optional[str] = None) -> AuthSession:
        """Approve a session and issue its token.

        A session is authorized at most once; approving it again returns
        it unchanged, with the token issued the first time.

        Raises:
            SessionNotFoundError: If the session is absent or expired.
        """
        session = self.poll(session_id)
        if session.authorized:
            return session
        approved = session.model_copy(update={
            "authorized": True,
            "user_id": user_id or str(uuid.uuid4()),
            "token": secrets.token_urlsafe(32),
        })
        self._store.update(approved)
        logger.info("Pairing session %s authorized for user %s", session_id, approved.user_id)
        return approved

    def login(self, session_id: str, email: str, password: str) -> bool:
        """Placeholder login gate shown before approval.

        Only checks that both fields are present; real credential
        verification belongs to the account service.

        Raises:
            SessionNotFoundError: If the session is absent or expired.
            InvalidCredentialsError: If either field is empty.
        """
        self.poll(session_id)
        if not (email and password):
            raise InvalidCredentialsError("Invalid credentials")
        return True


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

_APPROVAL_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>TaskBridge - Connect App</title></head>
<body style="font-family: -apple-system, sans-serif; max-width: 480px; margin: 80px auto; text-align: center">
  <h1>Connect TaskBridge</h1>
  <p>Allow this Mac to sync tasks between your remote projects and OmniFocus.</p>
  <button id="approve">Authorize</button>
  <p id="result"></p>
  <script>
    document.getElementById('approve').onclick = async function () {
      const resp = await fetch(window.location.href, {
        method: 'POST',
        headers: {'Content-Type': 'application/json'},
        body: JSON.stringify({action: 'authorize'})
      });
      document.getElementById('result').textContent =
        resp.ok ? 'Authorized. You can close this window.' : 'This link has expired.';
    };
  </script>
</body>
</html>
"""


class PairingServer:
    """Serve the pairing endpoints over HTTP.

    Args:
        exchange: The exchange that owns session state.
        host: Bind address.
        port: Bind port (0 picks a free one).
    """

    def __init__(self, exchange: PairingExchange, host: str = "127.0.0.1", port: int = DEFAULT_PAIRING_PORT):
        self.exchange = exchange
        self.host = host
        self.port = port
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Bind and serve on a background thread."""
        self._server = ThreadingHTTPServer((self.host, self.port), self._handler_class())
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="pairing-api", daemon=True,
        )
        self._thread.start()
        logger.info("Pairing server listening on http://%s:%d", self.host, self.port)

    def stop(self) -> None:
        """Shut the server down."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def _handler_class(self) -> type:
        exchange = self.exchange

        class PairingHandler(BaseHTTPRequestHandler):
            """HTTP handler for the pairing endpoints."""

            def do_POST(self):
                path, session_id = self._route()
                if path == "/auth/session" and not session_id:
                    sid, url = exchange.create_session()
                    self._json_response({"sessionId": sid, "authUrl": url})
                elif path in ("/auth/session", "/auth/app-login"):
                    self._approve(session_id)
                else:
                    self._json_response({"error": "Not found"}, status=404)

            def do_GET(self):
                path, session_id = self._route()
                if path == "/auth/session":
                    self._poll(session_id)
                elif path == "/auth/app-login":
                    if not session_id:
                        self._json_response({"error": "Missing session parameter"}, status=400)
                        return
                    self._html_response(_APPROVAL_PAGE)
                else:
                    self._json_response({"error": "Not found"}, status=404)

            def do_PUT(self):
                self._json_response({"error": "Method not allowed"}, status=405)

            do_DELETE = do_PUT
            do_PATCH = do_PUT

            def _route(self) -> tuple[str, Optional[str]]:
                parts = urlsplit(self.path)
                session = parse_qs(parts.query).get("session", [None])[0]
                return parts.path.rstrip("/") or "/", session

            def _poll(self, session_id: Optional[str]) -> None:
                if not session_id:
                    self._json_response({"error": "Session ID required"}, status=400)
                    return
                try:
                    session = exchange.poll(session_id)
                except SessionNotFoundError:
                    self._json_response({"error": NOT_FOUND_MESSAGE}, status=404)
                    return
                self._json_response(session.poll_payload())

            def _approve(self, session_id: Optional[str]) -> None:
                if not session_id:
                    self._json_response({"error": "Missing session parameter"}, status=400)
                    return
                body = self._read_json()
                action = body.get("action")
                try:
                    if action == "authorize":
                        exchange.authorize(session_id)
                        self._json_response({"success": True})
                    elif action == "login":
                        exchange.login(session_id, body.get("email", ""), body.get("password", ""))
                        self._json_response({"success": True, "loggedIn": True})
                    else:
                        self._json_response({"error": f"Unknown action: {action}"}, status=400)
                except SessionNotFoundError:
                    self._json_response({"error": "Session not found"}, status=404)
                except InvalidCredentialsError as exc:
                    self._json_response({"error": str(exc)}, status=400)

            def _read_json(self) -> dict:
                length = int(self.headers.get("Content-Length") or 0)
                if not length:
                    return {}
                try:
                    data = json.loads(self.rfile.read(length))
                except (json.JSONDecodeError, UnicodeDecodeError):
                    return {}
                return data if isinstance(data, dict) else {}

            def _json_response(self, data: dict, status: int = 200):
                body = json.dumps(data).encode()
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _html_response(self, html: str):
                body = html.encode()
                self.send_response(200)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format, *args):
                logger.debug("Pairing API: %s", format % args)

        return PairingHandler


# ---------------------------------------------------------------------------
# Device-side client
# ---------------------------------------------------------------------------


class PairingClient:
    """Drive a pairing handshake from the device.

    Args:
        base_url: Root URL of the pairing service.
        timeout: Per-request timeout in seconds.
        session: Optional requests session, mainly for tests.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            return self._session.request(
                method, f"{self._base_url}{path}", timeout=self._timeout, **kwargs,
            )
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}", method=method, endpoint=path) from exc

    def start(self) -> tuple[str, str]:
        """Create a session; returns (session_id, auth_url)."""
        resp = self._request("POST", "/auth/session")
        if resp.status_code >= 400:
            raise TransportError(
                f"POST /auth/session: {resp.status_code}",
                method="POST", endpoint="/auth/session", status_code=resp.status_code,
            )
        data = _json_body(resp, "POST", "/auth/session")
        try:
            return data["sessionId"], data["authUrl"]
        except (KeyError, TypeError) as exc:
            raise TransportError(
                "POST /auth/session: response lacks sessionId/authUrl",
                method="POST", endpoint="/auth/session", status_code=resp.status_code,
            ) from exc

    def poll(self, session_id: str) -> Optional[dict]:
        """Session state, or None if it is gone (missing or expired)."""
        resp = self._request("GET", "/auth/session", params={"session": session_id})
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise TransportError(
                f"GET /auth/session: {resp.status_code}",
                method="GET", endpoint="/auth/session", status_code=resp.status_code,
            )
        return _json_body(resp, "GET", "/auth/session")

    def wait_for_token(
        self,
        session_id: str,
        timeout: float = SESSION_TTL.total_seconds(),
        interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> dict:
        """Poll until the session is authorized.

        Returns:
            The authorized poll body (``authorized``, ``token``, ``userId``).

        Raises:
            SessionNotFoundError: If the session disappears (expired).
            PairingTimeoutError: If ``timeout`` passes first.
        """
        deadline = clock() + timeout
        while True:
            data = self.poll(session_id)
            if data is None:
                raise SessionNotFoundError(session_id)
            if data.get("authorized") and data.get("token"):
                return data
            if clock() >= deadline:
                raise PairingTimeoutError(
                    f"Session {session_id} was not approved within {timeout:g}s"
                )
            sleep(interval)


def _json_body(resp: requests.Response, method: str, path: str) -> dict:
    """Decode a JSON object body, reporting anything else as a transport failure."""
    try:
        data = resp.json()
    except ValueError as exc:
        raise TransportError(
            f"{method} {path}: response is not JSON",
            method=method, endpoint=path, status_code=resp.status_code,
        ) from exc
    if not isinstance(data, dict):
        raise TransportError(
            f"{method} {path}: expected a JSON object",
            method=method, endpoint=path, status_code=resp.status_code,
        )
    return data

"""
Session store.

Owns the current authenticated identity and keeps it consistent across
restarts, OAuth redirects and tab refocus. Dependent components subscribe
to ``SessionChange`` events instead of polling.

State machine:
    UNKNOWN -> (restore) -> AUTHENTICATED | ANONYMOUS
    AUTHENTICATED -> ANONYMOUS      on sign_out or expiry without refresh
    ANONYMOUS -> AUTHENTICATED      on sign_in or restore

Events are emitted only when the session materially changes (different
identity or expiry), so refocusing a tab with an unchanged session is silent.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Union
from urllib.parse import parse_qs

from .auth import AuthBackend
from .errors import SessionExpired, Unreachable
from .remote import call_with_timeout
from studio_credits.storage.models import Identity, Session, utcnow

logger = logging.getLogger(__name__)


class SessionState(Enum):
    UNKNOWN = "unknown"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class SessionChange:
    """Transition from ``old`` to ``new``; either side may be None."""
    old: Optional[Session]
    new: Optional[Session]

    @property
    def identity(self) -> Optional[Identity]:
        return self.new.identity if self.new else None


@dataclass(frozen=True)
class PasswordCredentials:
    email: str
    password: str
    sign_up: bool = False


@dataclass(frozen=True)
class OAuthCredentials:
    provider: str
    code: str


Credentials = Union[PasswordCredentials, OAuthCredentials]
SessionListener = Callable[[SessionChange], None]


class TokenStorage(Protocol):
    """Where the client persists its tokens between runs."""

    def load(self) -> Optional[Dict[str, str]]:
        """Return ``{"access_token", "refresh_token"}`` or None."""

    def save(self, access_token: str, refresh_token: str) -> None:
        """Persist tokens."""

    def clear(self) -> None:
        """Forget tokens."""


class MemoryTokenStorage:
    """Token storage that lives as long as the process."""

    def __init__(self):
        self._tokens: Optional[Dict[str, str]] = None

    def load(self) -> Optional[Dict[str, str]]:
        return dict(self._tokens) if self._tokens else None

    def save(self, access_token: str, refresh_token: str) -> None:
        self._tokens = {"access_token": access_token, "refresh_token": refresh_token}

    def clear(self) -> None:
        self._tokens = None


class FileTokenStorage:
    """Token storage in a JSON file, shared by every client using the path."""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, str]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable token file %s: %s", self.path, e)
            return None
        if not isinstance(data, dict) or not data.get("access_token"):
            return None
        return {"access_token": data["access_token"], "refresh_token": data.get("refresh_token", "")}

    def save(self, access_token: str, refresh_token: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({"access_token": access_token, "refresh_token": refresh_token}, f)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def parse_redirect_fragment(fragment: str) -> Optional[Dict[str, str]]:
    """Extract tokens from an OAuth redirect fragment.

    Accepts ``#access_token=...&refresh_token=...`` with or without the ``#``.

    Returns:
        Token dict, or None if the fragment carries no tokens or an error
    """
    params = parse_qs(fragment.lstrip("#"), keep_blank_values=False)
    if "error" in params:
        description = params.get("error_description", params["error"])[0]
        logger.warning("OAuth redirect carried an error: %s", description)
        return None
    access_token = params.get("access_token", [None])[0]
    if not access_token:
        return None
    return {
        "access_token": access_token,
        "refresh_token": params.get("refresh_token", [""])[0],
    }


class SessionStore:
    """Process-wide owner of the current session."""

    def __init__(
        self,
        backend: AuthBackend,
        storage: Optional[TokenStorage] = None,
        timeout: float = 15.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend
        self.storage = storage if storage is not None else MemoryTokenStorage()
        self.timeout = timeout
        self.clock = clock
        self._lock = threading.RLock()
        self._listeners: List[SessionListener] = []
        self._state = SessionState.UNKNOWN
        self._session: Optional[Session] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def identity(self) -> Optional[Identity]:
        return self._session.identity if self._session else None

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register for session changes; returns the unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def restore(self, redirect_fragment: Optional[str] = None) -> Optional[Session]:
        """Recover a session from a redirect fragment or persisted tokens.

        Concurrent and repeated calls are serialised; a call that finds the
        session already restored returns it without side effects.
        """
        with self._lock:
            tokens = parse_redirect_fragment(redirect_fragment) if redirect_fragment else None
            if tokens is None:
                if self._session is not None and not self._session.is_expired(self.clock()):
                    return self._session
                tokens = self.storage.load()
            if not tokens:
                self._set(None)
                return None

            try:
                session = self._resolve(tokens)
            except Unreachable as e:
                logger.warning("Could not restore session, keeping stored tokens: %s", e)
                if self._state is SessionState.UNKNOWN:
                    self._state = SessionState.ANONYMOUS
                return self._session
            self._persist(session)
            self._set(session)
            return session

    def sign_in(self, credentials: Credentials) -> Session:
        """Establish a new session.

        Raises:
            InvalidCredentials: Bad email or password
            AccountExists: Sign-up for an existing email
            ProviderError: OAuth failure
            Unreachable: Auth service did not answer in time
        """
        if isinstance(credentials, PasswordCredentials):
            if credentials.sign_up:
                session = self._remote(self.backend.sign_up, credentials.email, credentials.password)
            else:
                session = self._remote(
                    self.backend.sign_in_with_password, credentials.email, credentials.password
                )
        elif isinstance(credentials, OAuthCredentials):
            session = self._remote(self.backend.sign_in_with_oauth, credentials.provider, credentials.code)
        else:
            raise TypeError(f"Unsupported credentials: {type(credentials).__name__}")

        with self._lock:
            self._persist(session)
            self._set(session)
        logger.info("Signed in %s (ID: %s)", session.identity.email, session.identity.user_id)
        return session

    def sign_out(self) -> None:
        """Destroy the current session.

        The remote invalidation is best-effort; local state is cleared and
        no error is raised, whatever the backend does.
        """
        with self._lock:
            session = self._session
            try:
                if session is not None:
                    self._remote(self.backend.sign_out, session.access_token)
            except Exception as e:
                logger.warning("Remote sign-out failed, clearing local session anyway: %s", e)
            finally:
                self.storage.clear()
                self._set(None)

    def revalidate(self) -> Optional[Session]:
        """Re-check the session when the client regains focus.

        Picks up a session established elsewhere (another tab, an email
        verification link) and drops one that was revoked or expired.
        """
        with self._lock:
            if self._session is None:
                return self.restore()
            tokens = {
                "access_token": self._session.access_token,
                "refresh_token": self._session.refresh_token,
            }
            try:
                session = self._resolve(tokens)
            except Unreachable as e:
                logger.warning("Session revalidation skipped: %s", e)
                return self._session
            self._persist(session)
            self._set(session)
            return session

    def _resolve(self, tokens: Dict[str, str]) -> Optional[Session]:
        """Validate ``tokens``, falling back to whatever is stored now.

        Refresh tokens are single-use: when another client sharing the
        storage refreshed first, our copy is dead and the stored one is live.
        """
        session = self._validate(tokens["access_token"], tokens.get("refresh_token"))
        if session is not None:
            return session
        stored = self.storage.load()
        if not stored or stored["access_token"] == tokens["access_token"]:
            return None
        logger.info("Stored tokens changed since they were read, retrying with them")
        return self._validate(stored["access_token"], stored.get("refresh_token"))

    def _validate(self, access_token: str, refresh_token: Optional[str]) -> Optional[Session]:
        """Resolve tokens to a live session, refreshing an expired one."""
        session = self._remote(self.backend.get_session, access_token)
        if session is not None and not session.is_expired(self.clock()):
            return session
        if not refresh_token:
            return None
        try:
            return self._remote(self.backend.refresh_session, refresh_token)
        except SessionExpired as e:
            logger.info("Session could not be refreshed: %s", e)
            return None

    def _persist(self, session: Optional[Session]) -> None:
        if session is None:
            self.storage.clear()
        else:
            self.storage.save(session.access_token, session.refresh_token)

    def _set(self, session: Optional[Session]) -> None:
        old = self._session
        self._session = session
        self._state = SessionState.AUTHENTICATED if session else SessionState.ANONYMOUS
        old_key = old.fingerprint if old else None
        new_key = session.fingerprint if session else None
        if old_key != new_key:
            self._emit(SessionChange(old=old, new=session))

    def _emit(self, change: SessionChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Session listener %r failed", listener)

    def _remote(self, fn, *args):
        return call_with_timeout(fn, *args, timeout=self.timeout)

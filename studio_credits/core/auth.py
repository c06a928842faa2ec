"""
Authentication backends.

``AuthBackend`` is the contract of the remote auth service the session
store talks to. ``LocalAuthBackend`` implements it on the shared SQLite
store: bcrypt password hashes, opaque random tokens, single-use refresh
tokens and pluggable OAuth providers.
"""

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Tuple

import bcrypt

from .errors import AccountExists, InvalidCredentials, ProviderError, SessionExpired
from studio_credits.storage.models import Identity, Session, utcnow
from studio_credits.storage.repository import AuthRepository, DuplicateEntry

logger = logging.getLogger(__name__)

# exchange(code) -> (provider subject, email or None)
OAuthExchange = Callable[[str], Tuple[str, Optional[str]]]


class AuthBackend(Protocol):
    """Remote authentication service."""

    def sign_up(self, email: str, password: str) -> Session:
        """Create a password account and return its first session."""

    def sign_in_with_password(self, email: str, password: str) -> Session:
        """Exchange email and password for a session."""

    def sign_in_with_oauth(self, provider: str, code: str) -> Session:
        """Exchange an OAuth authorization result for a session."""

    def get_session(self, access_token: str) -> Optional[Session]:
        """Look up a live (possibly expired) session by access token."""

    def refresh_session(self, refresh_token: str) -> Session:
        """Trade a refresh token for a new session."""

    def sign_out(self, access_token: str) -> None:
        """Invalidate a session on the server."""


class LocalAuthBackend:
    """Auth service backed by the credit store's identity tables."""

    def __init__(
        self,
        repository: AuthRepository,
        session_ttl: timedelta = timedelta(hours=1),
        bcrypt_rounds: int = 12,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.session_ttl = session_ttl
        self.bcrypt_rounds = bcrypt_rounds
        self.clock = clock
        self._providers: Dict[str, OAuthExchange] = {}

    def register_oauth_provider(self, name: str, exchange: OAuthExchange) -> None:
        """Enable sign-in through ``name`` (e.g. "google")."""
        self._providers[name] = exchange

    def sign_up(self, email: str, password: str) -> Session:
        email = _normalize_email(email)
        if not password:
            raise InvalidCredentials("Password is required")
        if self.repository.find_password_identity(email) is not None:
            raise AccountExists(f"An account already exists for {email}")

        password_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(self.bcrypt_rounds))
        identity = Identity(user_id=uuid.uuid4().hex, email=email)
        try:
            self.repository.create_identity(identity, password_hash.decode("utf-8"), self.clock())
        except DuplicateEntry:
            raise AccountExists(f"An account already exists for {email}") from None
        logger.info("Registered %s (ID: %s)", email, identity.user_id)
        return self._issue(identity)

    def sign_in_with_password(self, email: str, password: str) -> Session:
        found = self.repository.find_password_identity(_normalize_email(email))
        if found is None:
            raise InvalidCredentials("Invalid email or password")
        identity, password_hash = found
        if not bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8")):
            raise InvalidCredentials("Invalid email or password")
        return self._issue(identity)

    def sign_in_with_oauth(self, provider: str, code: str) -> Session:
        exchange = self._providers.get(provider)
        if exchange is None:
            raise ProviderError(f"OAuth provider not configured: {provider}")
        try:
            subject, email = exchange(code)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"{provider} sign-in failed: {e}") from e
        if not subject:
            raise ProviderError(f"{provider} returned no subject")

        user_id = uuid.uuid5(uuid.NAMESPACE_URL, f"{provider}:{subject}").hex
        identity = self.repository.upsert_identity(
            Identity(user_id=user_id, email=_normalize_email(email) if email else None),
            self.clock(),
        )
        return self._issue(identity)

    def get_session(self, access_token: str) -> Optional[Session]:
        if not access_token:
            return None
        return self.repository.get_session(access_token)

    def refresh_session(self, refresh_token: str) -> Session:
        identity = self.repository.owner_of_refresh_token(refresh_token) if refresh_token else None
        if identity is None:
            raise SessionExpired("Refresh token is invalid or already used")
        replacement = self._new_session(identity)
        if not self.repository.rotate_session(refresh_token, replacement):
            raise SessionExpired("Refresh token is invalid or already used")
        return replacement

    def sign_out(self, access_token: str) -> None:
        self.repository.revoke_session(access_token)

    def _new_session(self, identity: Identity) -> Session:
        return Session(
            access_token=secrets.token_urlsafe(32),
            refresh_token=secrets.token_urlsafe(32),
            identity=identity,
            expires_at=self.clock() + self.session_ttl,
        )

    def _issue(self, identity: Identity) -> Session:
        session = self._new_session(identity)
        self.repository.insert_session(session)
        return session


def _normalize_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        raise InvalidCredentials("A valid email address is required")
    return email.strip().lower()

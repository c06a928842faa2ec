"""
Unit tests for authentication and the session store.
"""

import json
import os
import shutil
import tempfile
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from studio_credits.core.auth import LocalAuthBackend
from studio_credits.core.errors import (
    AccountExists,
    InvalidCredentials,
    ProviderError,
    SessionExpired,
    Unreachable,
)
from studio_credits.core.session import (
    FileTokenStorage,
    MemoryTokenStorage,
    OAuthCredentials,
    PasswordCredentials,
    SessionState,
    SessionStore,
    parse_redirect_fragment,
)
from studio_credits.storage.models import Identity, Session
from studio_credits.storage.repository import AuthRepository, initialize_schema


class FakeClock:

    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class AuthTestCase:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.clock = FakeClock()
        self.backend = LocalAuthBackend(
            AuthRepository(self.db_path),
            session_ttl=timedelta(hours=1),
            bcrypt_rounds=4,
            clock=self.clock,
        )
        self.storage = MemoryTokenStorage()
        self.changes = []
        self.store = self._store()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _store(self, backend=None, timeout=5.0):
        store = SessionStore(backend or self.backend, self.storage, timeout=timeout, clock=self.clock)
        store.subscribe(self.changes.append)
        return store


class TestLocalAuthBackend(AuthTestCase):

    def test_sign_up_then_sign_in(self):
        created = self.backend.sign_up("Alice@Example.com", "s3cret")
        session = self.backend.sign_in_with_password("alice@example.com", "s3cret")

        assert session.identity == created.identity
        assert session.identity.email == "alice@example.com"
        assert session.access_token != created.access_token
        assert session.expires_at == self.clock.now + timedelta(hours=1)

    def test_duplicate_sign_up(self):
        self.backend.sign_up("alice@example.com", "s3cret")
        with pytest.raises(AccountExists):
            self.backend.sign_up("ALICE@example.com", "other")

    @pytest.mark.parametrize("email,password", [
        ("alice@example.com", "wrong"),
        ("nobody@example.com", "s3cret"),
    ])
    def test_bad_credentials(self, email, password):
        self.backend.sign_up("alice@example.com", "s3cret")
        with pytest.raises(InvalidCredentials):
            self.backend.sign_in_with_password(email, password)

    def test_invalid_email_rejected(self):
        with pytest.raises(InvalidCredentials):
            self.backend.sign_up("not-an-email", "s3cret")

    def test_refresh_token_is_single_use(self):
        session = self.backend.sign_up("alice@example.com", "s3cret")

        refreshed = self.backend.refresh_session(session.refresh_token)

        assert refreshed.identity == session.identity
        assert self.backend.get_session(session.access_token) is None
        with pytest.raises(SessionExpired):
            self.backend.refresh_session(session.refresh_token)

    def test_oauth_identity_is_stable(self):
        self.backend.register_oauth_provider("google", lambda code: ("sub-1", "G@example.com"))

        first = self.backend.sign_in_with_oauth("google", "code-a")
        second = self.backend.sign_in_with_oauth("google", "code-b")

        assert first.identity.user_id == second.identity.user_id
        assert first.identity.email == "g@example.com"

    def test_oauth_failures(self):
        with pytest.raises(ProviderError):
            self.backend.sign_in_with_oauth("github", "code")

        def broken(code):
            raise RuntimeError("consent denied")

        self.backend.register_oauth_provider("google", broken)
        with pytest.raises(ProviderError, match="consent denied"):
            self.backend.sign_in_with_oauth("google", "code")


class TestSessionStore(AuthTestCase):

    def test_initial_state_is_unknown(self):
        assert self.store.state is SessionState.UNKNOWN
        assert self.store.identity is None

    def test_sign_in_persists_and_notifies(self):
        session = self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))

        assert self.store.state is SessionState.AUTHENTICATED
        assert self.store.identity == session.identity
        assert self.storage.load() == {
            "access_token": session.access_token,
            "refresh_token": session.refresh_token,
        }
        assert len(self.changes) == 1
        assert self.changes[0].old is None
        assert self.changes[0].new == session

    def test_failed_sign_in_keeps_state(self):
        self.backend.sign_up("alice@example.com", "s3cret")
        with pytest.raises(InvalidCredentials):
            self.store.sign_in(PasswordCredentials("alice@example.com", "wrong"))

        assert self.store.state is SessionState.UNKNOWN
        assert self.changes == []

    def test_oauth_sign_in(self):
        self.backend.register_oauth_provider("google", lambda code: ("sub-1", None))
        session = self.store.sign_in(OAuthCredentials("google", "code"))
        assert self.store.identity == session.identity

    def test_unsupported_credentials(self):
        with pytest.raises(TypeError):
            self.store.sign_in(("alice", "s3cret"))

    def test_restore_without_tokens_is_anonymous(self):
        assert self.store.restore() is None
        assert self.store.state is SessionState.ANONYMOUS
        assert self.changes == []

    def test_restore_from_storage(self):
        session = self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))
        restarted = self._store()

        restored = restarted.restore()

        assert restored.identity == session.identity
        assert restarted.state is SessionState.AUTHENTICATED

    def test_repeated_restore_emits_once(self):
        self.backend.sign_up("alice@example.com", "s3cret")
        session = self.backend.sign_in_with_password("alice@example.com", "s3cret")
        self.storage.save(session.access_token, session.refresh_token)

        self.store.restore()
        self.store.restore()
        self.store.revalidate()

        assert len(self.changes) == 1

    def test_restore_refreshes_expired_session(self):
        session = self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))
        self.clock.advance(hours=2)

        restored = self._store().restore()

        assert restored.identity == session.identity
        assert restored.access_token != session.access_token
        assert restored.expires_at == self.clock.now + timedelta(hours=1)
        assert self.storage.load()["access_token"] == restored.access_token

    def test_restore_from_redirect_fragment(self):
        self.backend.register_oauth_provider("google", lambda code: ("sub-1", "g@example.com"))
        session = self.backend.sign_in_with_oauth("google", "code")
        fragment = f"#access_token={session.access_token}&refresh_token={session.refresh_token}&type=oauth"

        restored = self.store.restore(redirect_fragment=fragment)

        assert restored.identity == session.identity
        assert self.storage.load()["access_token"] == session.access_token

    def test_restore_when_auth_service_unreachable(self):
        backend = MagicMock()
        backend.get_session.side_effect = Unreachable("auth down")
        self.storage.save("at", "rt")
        store = self._store(backend=backend)

        assert store.restore() is None
        assert store.state is SessionState.ANONYMOUS
        assert self.storage.load() == {"access_token": "at", "refresh_token": "rt"}

    def test_slow_auth_service_times_out(self):
        backend = MagicMock()
        backend.get_session.side_effect = lambda token: time.sleep(0.5)
        self.storage.save("at", "rt")
        store = self._store(backend=backend, timeout=0.05)

        assert store.restore() is None
        assert store.state is SessionState.ANONYMOUS

    def test_sign_out_revokes_and_clears(self):
        session = self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))

        self.store.sign_out()

        assert self.store.state is SessionState.ANONYMOUS
        assert self.store.session is None
        assert self.storage.load() is None
        assert self.backend.get_session(session.access_token) is None
        assert self.changes[-1].old == session
        assert self.changes[-1].new is None

    def test_sign_out_clears_locally_when_remote_fails(self):
        backend = MagicMock()
        backend.sign_up.return_value = Session(
            "at", "rt", Identity("u1", "alice@example.com"), self.clock.now + timedelta(hours=1)
        )
        backend.sign_out.side_effect = Unreachable("auth down")
        store = self._store(backend=backend)
        store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))

        store.sign_out()

        assert store.state is SessionState.ANONYMOUS
        assert self.storage.load() is None

    def test_sign_out_survives_unexpected_backend_error(self):
        backend = MagicMock()
        backend.sign_up.return_value = Session(
            "at", "rt", Identity("u1", "alice@example.com"), self.clock.now + timedelta(hours=1)
        )
        backend.sign_out.side_effect = RuntimeError("auth client bug")
        store = self._store(backend=backend)
        store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))

        store.sign_out()

        assert store.state is SessionState.ANONYMOUS
        assert store.session is None
        assert self.storage.load() is None
        assert self.changes[-1].new is None

    def test_revalidate_drops_revoked_session(self):
        session = self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))
        # signed out from another device: both tokens are dead
        self.backend.refresh_session(session.refresh_token)

        assert self.store.revalidate() is None
        assert self.store.state is SessionState.ANONYMOUS
        assert self.changes[-1].new is None

    def test_revalidate_picks_up_session_from_elsewhere(self):
        self.store.restore()
        self.backend.sign_up("alice@example.com", "s3cret")
        other = self.backend.sign_in_with_password("alice@example.com", "s3cret")
        self.storage.save(other.access_token, other.refresh_token)

        assert self.store.revalidate() == other
        assert self.store.state is SessionState.AUTHENTICATED

    def test_tabs_sharing_token_file_survive_refresh_by_the_other(self):
        path = os.path.join(self.temp_dir, "tokens.json")
        tab_a = SessionStore(self.backend, FileTokenStorage(path), clock=self.clock)
        tab_b = SessionStore(self.backend, FileTokenStorage(path), clock=self.clock)
        session = tab_a.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))
        tab_b.restore()
        self.clock.advance(hours=2)

        # tab A refreshes first, which spends the refresh token tab B holds
        refreshed = tab_a.revalidate()
        adopted = tab_b.revalidate()

        assert refreshed.refresh_token != session.refresh_token
        assert adopted.access_token == refreshed.access_token
        assert adopted.identity == session.identity
        assert tab_b.state is SessionState.AUTHENTICATED
        assert FileTokenStorage(path).load() == {
            "access_token": refreshed.access_token,
            "refresh_token": refreshed.refresh_token,
        }
        new_tab = SessionStore(self.backend, FileTokenStorage(path), clock=self.clock)
        assert new_tab.restore().identity == session.identity

    def test_dead_tokens_in_shared_storage_are_cleared(self):
        session = self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))
        other = self._store()
        other.restore()
        # revoked everywhere: the refresh token was spent outside both stores
        self.backend.refresh_session(session.refresh_token)

        assert other.revalidate() is None
        assert other.state is SessionState.ANONYMOUS
        assert self.storage.load() is None

    def test_listener_errors_do_not_break_sign_in(self):
        def broken(change):
            raise RuntimeError("listener bug")

        self.store.subscribe(broken)
        self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))

        assert self.store.state is SessionState.AUTHENTICATED
        assert len(self.changes) == 1

    def test_unsubscribe(self):
        received = []
        unsubscribe = self.store.subscribe(received.append)
        unsubscribe()

        self.store.sign_in(PasswordCredentials("alice@example.com", "s3cret", sign_up=True))
        assert received == []


class TestTokenStorage:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = os.path.join(self.temp_dir, "nested", "tokens.json")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_file_storage_round_trip(self):
        storage = FileTokenStorage(self.path)
        assert storage.load() is None

        storage.save("at", "rt")
        assert FileTokenStorage(self.path).load() == {"access_token": "at", "refresh_token": "rt"}

        storage.clear()
        storage.clear()
        assert storage.load() is None

    def test_unreadable_file_is_ignored(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("{not json")
        assert FileTokenStorage(self.path).load() is None

        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(["at"], f)
        assert FileTokenStorage(self.path).load() is None


class TestRedirectFragment:

    def test_tokens_extracted(self):
        assert parse_redirect_fragment("#access_token=a&refresh_token=r&expires_in=3600") == {
            "access_token": "a",
            "refresh_token": "r",
        }

    def test_error_fragment(self):
        assert parse_redirect_fragment("error=access_denied&error_description=denied") is None

    def test_fragment_without_tokens(self):
        assert parse_redirect_fragment("#state=xyz") is None

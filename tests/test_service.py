"""Unit tests for auth/service.py -- the session lifecycle state machine.

Covers:
- register: policy, email normalization, case-insensitive conflict
- login: generic failure for unknown email, wrong password and deleted account
- refresh: rotation retires the predecessor, expiry, revocation, deleted owner
- refresh race: two concurrent refreshes of one token leave exactly one session
- logout: idempotent
- restore/get_user never expose the password hash
- administration: deactivate cascade, session count, purge
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import AuthenticationError, ConflictError, StoreError, ValidationError
from auth.models import TokenKind
from conftest import ALICE_EMAIL, ALICE_PASSWORD, make_service


@pytest.fixture
def alice(service):
    return service.register(ALICE_EMAIL, ALICE_PASSWORD, "Alice")


# ---------------------------------------------------------------------------
# Register / login
# ---------------------------------------------------------------------------


def test_register_returns_profile_and_tokens(service, alice):
    assert alice.user.email == ALICE_EMAIL
    assert alice.user.display_name == "Alice"
    assert "password_hash" not in asdict(alice.user)
    assert set(asdict(alice.tokens)) == {"access_token", "refresh_token"}
    assert service.authenticate_access(alice.tokens.access_token) == alice.user.id
    assert service.sessions.find_session_by_token(alice.tokens.refresh_token) is not None


def test_register_then_login_with_same_password(service, alice):
    result = service.login(ALICE_EMAIL, ALICE_PASSWORD)
    assert result.user.id == alice.user.id


def test_register_normalizes_email(service):
    result = service.register("  Bob@Example.COM ", ALICE_PASSWORD)
    assert result.user.email == "bob@example.com"
    assert service.login("BOB@example.com", ALICE_PASSWORD).user.id == result.user.id


def test_register_conflict_is_case_insensitive(service, alice):
    with pytest.raises(ConflictError):
        service.register("ALICE@example.com", "Other0Pass")


@pytest.mark.parametrize("password", ["short1A", "alllowercase1", "NoDigitsHere"])
def test_register_rejects_weak_password(service, password):
    with pytest.raises(ValidationError):
        service.register("carol@example.com", password)
    assert service.credentials.find_user_by_email("carol@example.com") is None


def test_register_rejects_malformed_email(service):
    with pytest.raises(ValidationError):
        service.register("not-an-email", ALICE_PASSWORD)


def test_login_failures_are_indistinguishable(service, alice):
    errors = []
    for email, password in [(ALICE_EMAIL, "Wrong0Pass"), ("nobody@example.com", ALICE_PASSWORD)]:
        with pytest.raises(AuthenticationError) as excinfo:
            service.login(email, password)
        errors.append(excinfo.value)

    assert {e.reason for e in errors} == {"bad_password", "unknown_user"}
    assert len({(e.status_code, e.code, e.message) for e in errors}) == 1


def test_login_unknown_user_still_runs_hasher(service):
    with patch.object(service.hasher, "burn", wraps=service.hasher.burn) as burn:
        with pytest.raises(AuthenticationError):
            service.login("nobody@example.com", ALICE_PASSWORD)
    burn.assert_called_once_with(ALICE_PASSWORD)


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


def test_refresh_rotates_and_retires_predecessor(service, alice, clock):
    clock.advance(1)
    pair = service.refresh(alice.tokens.refresh_token)
    assert pair.refresh_token != alice.tokens.refresh_token
    assert service.authenticate_access(pair.access_token) == alice.user.id

    with pytest.raises(AuthenticationError) as excinfo:
        service.refresh(alice.tokens.refresh_token)
    assert excinfo.value.reason == "revoked"

    assert service.refresh(pair.refresh_token).refresh_token != pair.refresh_token


def test_refresh_rejects_access_token(service, alice):
    with pytest.raises(AuthenticationError):
        service.refresh(alice.tokens.access_token)


@pytest.mark.parametrize("token", [None, "", "garbage"])
def test_refresh_rejects_missing_or_malformed_token(service, token):
    with pytest.raises(AuthenticationError):
        service.refresh(token)


def test_refresh_after_expiry_fails_and_reaps_row(service, alice, clock):
    clock.advance(service.signer.ttl(TokenKind.refresh))
    with pytest.raises(AuthenticationError) as excinfo:
        service.refresh(alice.tokens.refresh_token)
    assert excinfo.value.reason == "expired"


def test_refresh_with_expired_row_but_valid_signature_reaps_row(service, alice, clock):
    session = service.sessions.find_session_by_token(alice.tokens.refresh_token)
    service.sessions.delete_session(session.id)
    session.expires_at = int(clock().timestamp())
    service.sessions.create_session(session)

    with pytest.raises(AuthenticationError) as excinfo:
        service.refresh(alice.tokens.refresh_token)
    assert excinfo.value.reason == "expired"
    assert service.sessions.find_session_by_token(alice.tokens.refresh_token) is None


def test_refresh_for_deactivated_user_fails(service, alice):
    service.credentials.soft_delete_user(alice.user.id)
    with pytest.raises(AuthenticationError) as excinfo:
        service.refresh(alice.tokens.refresh_token)
    assert excinfo.value.reason == "deleted_user"


def test_concurrent_refresh_leaves_exactly_one_session(tmp_path, clock):
    """Two refreshes of the same token race; one wins, one gets a plain 401, one session survives."""
    svc = make_service(tmp_path / "race.db", clock=clock)
    try:
        result = svc.register(ALICE_EMAIL, ALICE_PASSWORD)
        barrier = threading.Barrier(2)

        def attempt():
            barrier.wait()
            try:
                return svc.refresh(result.tokens.refresh_token)
            except AuthenticationError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(lambda _: attempt(), range(2)))

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, AuthenticationError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].reason in ("superseded", "revoked")
        assert svc.sessions.count_sessions_for_user(result.user.id) == 1
        assert svc.sessions.find_session_by_token(winners[0].refresh_token) is not None

        # The losing caller still holds the retired token; only a new login recovers it.
        with pytest.raises(AuthenticationError):
            svc.refresh(result.tokens.refresh_token)
        recovered = svc.login(ALICE_EMAIL, ALICE_PASSWORD)
        assert svc.refresh(recovered.tokens.refresh_token).refresh_token
        assert svc.sessions.count_sessions_for_user(result.user.id) == 2
    finally:
        svc.credentials.engine.dispose()


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


def test_logout_is_idempotent(service, alice):
    assert service.logout(alice.tokens.refresh_token) == 1
    assert service.logout(alice.tokens.refresh_token) == 0
    assert service.logout(None) == 0
    assert service.logout("never-issued") == 0


def test_refresh_after_logout_fails(service, alice):
    service.logout(alice.tokens.refresh_token)
    with pytest.raises(AuthenticationError):
        service.refresh(alice.tokens.refresh_token)


def test_logout_swallows_store_failure(service, alice):
    failure = OperationalError("DELETE", {}, Exception("disk I/O error"))
    with patch.object(service.sessions, "delete_sessions_by_token", side_effect=failure):
        assert service.logout(alice.tokens.refresh_token) == 0


def test_store_failure_elsewhere_becomes_store_error(service):
    failure = OperationalError("SELECT", {}, Exception("disk I/O error"))
    with patch.object(service.credentials, "find_user_by_email", side_effect=failure):
        with pytest.raises(StoreError) as excinfo:
            service.login(ALICE_EMAIL, ALICE_PASSWORD)
    assert excinfo.value.status_code == 500
    assert "disk" not in excinfo.value.message


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


def test_access_token_stays_valid_after_refresh_rotation(service, alice):
    service.refresh(alice.tokens.refresh_token)
    assert service.authenticate_access(alice.tokens.access_token) == alice.user.id


def test_access_token_expires_after_ttl(service, alice, clock):
    clock.advance(service.access_token_ttl)
    with pytest.raises(AuthenticationError) as excinfo:
        service.authenticate_access(alice.tokens.access_token)
    assert excinfo.value.reason == "expired"


def test_restore_returns_sanitized_profile(service, alice):
    profile = service.restore(alice.tokens.access_token)
    assert profile == alice.user
    assert set(asdict(profile)) == {"id", "email", "display_name", "created_at"}


def test_restore_for_deleted_user_fails(service, alice):
    service.credentials.soft_delete_user(alice.user.id)
    with pytest.raises(AuthenticationError):
        service.restore(alice.tokens.access_token)


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


def test_deactivate_user_revokes_all_sessions(service, alice):
    service.login(ALICE_EMAIL, ALICE_PASSWORD)
    assert service.active_session_count(ALICE_EMAIL) == 2

    assert service.deactivate_user("Alice@Example.com") is True
    assert service.active_session_count(ALICE_EMAIL) == 0
    assert service.deactivate_user(ALICE_EMAIL) is False

    with pytest.raises(AuthenticationError) as excinfo:
        service.login(ALICE_EMAIL, ALICE_PASSWORD)
    assert excinfo.value.reason == "deleted_user"


def test_deactivated_email_cannot_be_registered_again(service, alice):
    service.deactivate_user(ALICE_EMAIL)
    with pytest.raises(ConflictError):
        service.register(ALICE_EMAIL, ALICE_PASSWORD)


def test_active_session_count_for_unknown_email(service):
    assert service.active_session_count("nobody@example.com") is None


def test_purge_expired_sessions(service, alice, clock):
    assert service.purge_expired_sessions() == 0
    clock.advance(service.signer.ttl(TokenKind.refresh))
    assert service.purge_expired_sessions() == 1

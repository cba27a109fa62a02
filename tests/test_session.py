"""
tests/test_session.py — Session Token Mint / Verify
====================================================
Round-trip, expiry against the injected clock, tamper detection and the
sliding refresh hint.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from types import SimpleNamespace

import jwt
import pytest

from conftest import TEST_JWT_SECRET, FakeClock
from opsdash.database.models import Role
from opsdash.errors import BadSignature, SessionError, SessionExpired
from opsdash.services.session import (
    DEV_SECRET,
    JWT_ALGORITHM,
    SessionAuthority,
    resolve_secret,
)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def authority(clock):
    return SessionAuthority(TEST_JWT_SECRET, clock=clock)


def _mint(authority, role="user"):
    return authority.mint(subject_id=7, email="a@x.com", name="Ann",
                          picture="http://p", role=role)


class TestRoundTrip:
    @pytest.mark.parametrize("role", ["user", "moderator", "admin"])
    def test_verify_returns_minted_claims(self, authority, clock, role):
        claims = authority.verify(_mint(authority, role))
        assert claims.subject_id == 7
        assert claims.email == "a@x.com"
        assert claims.name == "Ann"
        assert claims.picture == "http://p"
        assert claims.role is Role(role)
        assert claims.issued_at == clock.now
        assert claims.expires_at == clock.now + timedelta(hours=24)

    def test_to_dict_is_public_shape(self, authority):
        body = authority.verify(_mint(authority)).to_dict()
        assert body == {"id": 7, "email": "a@x.com", "name": "Ann",
                        "picture": "http://p", "role": "user"}


class TestExpiry:
    def test_valid_just_before_expiry(self, authority, clock):
        token = _mint(authority)
        clock.advance(hours=24, seconds=-1)
        assert authority.verify(token).email == "a@x.com"

    def test_rejected_at_expiry(self, authority, clock):
        token = _mint(authority)
        clock.advance(hours=24)
        with pytest.raises(SessionExpired) as exc_info:
            authority.verify(token)
        assert exc_info.value.kind == "expired"
        assert exc_info.value.status_code == 401


class TestRejection:
    def test_wrong_key_is_bad_signature(self, authority, clock):
        other = SessionAuthority("another-secret-" + "y" * 40, clock=clock)
        with pytest.raises(BadSignature):
            authority.verify(_mint(other))

    def test_garbage_is_malformed(self, authority):
        with pytest.raises(SessionError) as exc_info:
            authority.verify("not.a.jwt")
        assert exc_info.value.kind == "malformed"

    def test_empty_token(self, authority):
        with pytest.raises(SessionError):
            authority.verify("")

    def test_missing_exp_is_malformed(self, authority):
        token = jwt.encode({"sub": "1", "email": "a@x.com", "iat": 0},
                           TEST_JWT_SECRET, algorithm=JWT_ALGORITHM)
        with pytest.raises(SessionError) as exc_info:
            authority.verify(token)
        assert exc_info.value.kind == "malformed"

    def test_unknown_role_is_malformed(self, authority, clock):
        now = int(clock.now.timestamp())
        token = jwt.encode(
            {"sub": "1", "email": "a@x.com", "role": "owner", "iat": now, "exp": now + 60},
            TEST_JWT_SECRET, algorithm=JWT_ALGORITHM,
        )
        with pytest.raises(SessionError):
            authority.verify(token)


class TestRefresh:
    def test_fresh_token_needs_no_refresh(self, authority):
        assert not authority.needs_refresh(authority.verify(_mint(authority)))

    def test_ageing_token_needs_refresh(self, authority, clock):
        token = _mint(authority)
        clock.advance(hours=19)  # 5h of 24h left < 25 %
        assert authority.needs_refresh(authority.verify(token))

    def test_mint_for_row_carries_stored_role(self, authority, clock):
        clock.advance(hours=20)
        row = SimpleNamespace(id=7, email="a@x.com", name="Ann", picture=None,
                              role="moderator", role_locked=True)
        fresh = authority.verify(authority.mint_for(row))
        assert fresh.expires_at == clock.now + timedelta(hours=24)
        assert (fresh.subject_id, fresh.role, fresh.role_locked) == (7, Role.MODERATOR, True)

    def test_role_locked_defaults_to_false(self, authority):
        assert authority.verify(_mint(authority)).role_locked is False


class TestSecret:
    def test_missing_secret_falls_back_with_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert resolve_secret(None) == DEV_SECRET
        assert "JWT_SECRET is not set" in caplog.text

    def test_short_secret_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert resolve_secret("short") == "short"
        assert "only 5 characters" in caplog.text

    def test_repr_hides_secret(self, authority):
        assert TEST_JWT_SECRET not in repr(authority)

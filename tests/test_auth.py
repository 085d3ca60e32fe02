# =============================================================================
# Unit Tests — Authorization, Identity & Throttling
# =============================================================================
#
# Tests auth components without requiring Redis, a running API, or real API keys.
# Uses mocking for external dependencies (Redis, DB sessions).
#
# Test groups:
#   1. Key generation & hashing (pure functions)
#   2. Auth dependency (get_current_api_key)
#   3. Scope checking (check_scope)
#   4. User identity and Google token headers
#   5. Rate limiter (check_rate_limit)
#   6. Inbox fetch throttle (check_fetch_interval)
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException

from dispute_center.services.auth import (
    generate_api_key,
    hash_api_key,
    is_expired,
    validate_scopes,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# 1. Key Generation & Hashing
# ---------------------------------------------------------------------------


class TestKeyGeneration:
    """Tests for API key generation and hashing."""

    def test_key_format_has_prefix(self):
        """Generated key starts with 'dc-'."""
        raw_key, prefix, key_hash = generate_api_key()
        assert raw_key.startswith("dc-")

    def test_key_length(self):
        """Generated key is 'dc-' + 64 hex chars = 67 chars total."""
        raw_key, prefix, key_hash = generate_api_key()
        assert len(raw_key) == 67

    def test_prefix_is_first_8_chars(self):
        raw_key, prefix, key_hash = generate_api_key()
        assert prefix == raw_key[:8]

    def test_hash_matches_raw_key(self):
        """The stored hash is the SHA-256 of the raw key."""
        raw_key, prefix, key_hash = generate_api_key()
        assert key_hash == hash_api_key(raw_key)
        assert len(key_hash) == 64
        int(key_hash, 16)

    def test_keys_are_unique(self):
        raw1, _, hash1 = generate_api_key()
        raw2, _, hash2 = generate_api_key()
        assert raw1 != raw2
        assert hash1 != hash2


class TestScopesAndExpiry:
    """validate_scopes / is_expired."""

    def test_unknown_scope_rejected(self):
        with pytest.raises(ValueError, match="Unknown scopes"):
            validate_scopes(["emails", "teleport"])

    def test_duplicates_removed_in_order(self):
        assert validate_scopes(["faq", "emails", "faq"]) == ["faq", "emails"]

    def test_no_scopes_is_empty_list(self):
        assert validate_scopes(None) == []

    def test_naive_expiry_treated_as_utc(self):
        past = datetime.now(UTC).replace(tzinfo=None) - timedelta(minutes=5)
        assert is_expired(past) is True

    def test_no_expiry_never_expires(self):
        assert is_expired(None) is False


# ---------------------------------------------------------------------------
# Helpers — lightweight fakes for auth dependency tests
# ---------------------------------------------------------------------------


@dataclass
class FakeApiKey:
    """Lightweight stand-in for the ApiKey ORM model."""

    id: int = 1
    name: str = "test-key"
    owner_email: str = "Agent@Example.com"
    key_prefix: str = "dc-test0"
    key_hash: str = ""
    scopes: list[str] | None = None
    rate_limit_rpm: int | None = None
    is_active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None


@dataclass
class FakeCredentials:
    """Stand-in for HTTPAuthorizationCredentials."""

    credentials: str = "dc-testkey"


class FakeRequestState:
    """Writable request.state."""

    pass


class FakeRequest:
    """Minimal Request stand-in."""

    def __init__(self):
        self.state = FakeRequestState()


def _session_returning(api_key):
    mock_session = AsyncMock()
    mock_result = MagicMock()
    mock_result.scalar_one_or_none.return_value = api_key
    mock_session.execute.return_value = mock_result
    return mock_session


# ---------------------------------------------------------------------------
# 2. Auth Dependency (get_current_api_key)
# ---------------------------------------------------------------------------


class TestGetCurrentApiKey:
    """Tests for the get_current_api_key dependency."""

    def test_auth_disabled_returns_none(self):
        """When auth_enabled=False, returns None (anonymous access)."""
        from dispute_center.api.deps import get_current_api_key

        with patch("dispute_center.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = False
            result = _run(get_current_api_key(
                request=FakeRequest(),
                credentials=None,
                session=AsyncMock(),
            ))
            assert result is None

    def test_missing_credentials_raises_401(self):
        from dispute_center.api.deps import get_current_api_key

        with patch("dispute_center.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = True
            with pytest.raises(HTTPException) as exc_info:
                _run(get_current_api_key(
                    request=FakeRequest(),
                    credentials=None,
                    session=AsyncMock(),
                ))
            assert exc_info.value.status_code == 401

    def test_invalid_key_raises_401(self):
        """When key not found in DB, raises 401."""
        from dispute_center.api.deps import get_current_api_key

        with patch("dispute_center.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = True
            with pytest.raises(HTTPException) as exc_info:
                _run(get_current_api_key(
                    request=FakeRequest(),
                    credentials=FakeCredentials(),
                    session=_session_returning(None),
                ))
            assert exc_info.value.status_code == 401

    def test_inactive_key_raises_403(self):
        from dispute_center.api.deps import get_current_api_key

        with patch("dispute_center.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = True
            with pytest.raises(HTTPException) as exc_info:
                _run(get_current_api_key(
                    request=FakeRequest(),
                    credentials=FakeCredentials(),
                    session=_session_returning(FakeApiKey(is_active=False)),
                ))
            assert exc_info.value.status_code == 403
            assert "deactivated" in exc_info.value.detail

    def test_expired_key_raises_403(self):
        from dispute_center.api.deps import get_current_api_key

        fake_key = FakeApiKey(expires_at=datetime.now(UTC) - timedelta(hours=1))

        with patch("dispute_center.api.deps.settings") as mock_settings:
            mock_settings.auth_enabled = True
            with pytest.raises(HTTPException) as exc_info:
                _run(get_current_api_key(
                    request=FakeRequest(),
                    credentials=FakeCredentials(),
                    session=_session_returning(fake_key),
                ))
            assert exc_info.value.status_code == 403
            assert "expired" in exc_info.value.detail

    def test_valid_key_returns_api_key(self):
        """A valid key is returned and its owner becomes the request user."""
        from dispute_center.api.deps import get_current_api_key

        fake_key = FakeApiKey()
        request = FakeRequest()

        with (
            patch("dispute_center.api.deps.settings") as mock_settings,
            patch(
                "dispute_center.services.rate_limiter.check_rate_limit",
                new_callable=AsyncMock,
            ) as mock_limit,
        ):
            mock_settings.auth_enabled = True
            result = _run(get_current_api_key(
                request=request,
                credentials=FakeCredentials(),
                session=_session_returning(fake_key),
            ))

        assert result is fake_key
        assert fake_key.last_used_at is not None
        assert request.state.api_key is fake_key
        assert request.state.user_email == "Agent@Example.com"
        mock_limit.assert_awaited_once_with(fake_key)


# ---------------------------------------------------------------------------
# 3. Scope Checking
# ---------------------------------------------------------------------------


class TestCheckScope:
    """Tests for the check_scope function."""

    def test_none_api_key_passes(self):
        from dispute_center.api.deps import check_scope
        check_scope(None, "admin")

    def test_null_scopes_means_full_access(self):
        from dispute_center.api.deps import check_scope
        check_scope(FakeApiKey(scopes=None), "admin")

    def test_matching_scope_passes(self):
        from dispute_center.api.deps import check_scope
        check_scope(FakeApiKey(scopes=["emails", "faq"]), "faq")

    def test_missing_scope_raises_403(self):
        from dispute_center.api.deps import check_scope
        with pytest.raises(HTTPException) as exc_info:
            check_scope(FakeApiKey(scopes=["emails"]), "stripe")
        assert exc_info.value.status_code == 403
        assert "stripe" in exc_info.value.detail


# ---------------------------------------------------------------------------
# 4. Identity Headers
# ---------------------------------------------------------------------------


class TestCurrentUserEmail:
    """Who owns the data a request touches."""

    def test_api_key_owner_wins(self):
        from dispute_center.api.deps import get_current_user_email

        request = FakeRequest()
        email = _run(get_current_user_email(
            request=request,
            api_key=FakeApiKey(owner_email=" Owner@Example.COM "),
            x_user_email="someone-else@example.com",
        ))
        assert email == "owner@example.com"
        assert request.state.user_email == "owner@example.com"

    def test_header_used_without_key(self):
        from dispute_center.api.deps import get_current_user_email

        email = _run(get_current_user_email(
            request=FakeRequest(),
            api_key=None,
            x_user_email="Support@Shop.io",
        ))
        assert email == "support@shop.io"

    def test_falls_back_to_default(self):
        from dispute_center.api.deps import get_current_user_email

        with patch("dispute_center.api.deps.settings") as mock_settings:
            mock_settings.default_user_email = "Default@Example.com"
            email = _run(get_current_user_email(
                request=FakeRequest(),
                api_key=None,
                x_user_email="   ",
            ))
        assert email == "default@example.com"


class TestGoogleAccessToken:

    def test_missing_token_raises_401(self):
        from dispute_center.api.deps import get_google_access_token

        with pytest.raises(HTTPException) as exc_info:
            get_google_access_token(None)
        assert exc_info.value.status_code == 401
        assert "X-Google-Access-Token" in exc_info.value.detail

    def test_token_is_stripped(self):
        from dispute_center.api.deps import get_google_access_token
        assert get_google_access_token("  ya29.token ") == "ya29.token"


# ---------------------------------------------------------------------------
# 5. Rate Limiter
# ---------------------------------------------------------------------------


class TestRateLimiter:
    """Tests for the Redis-based rate limiter."""

    def test_none_api_key_skips(self):
        from dispute_center.services.rate_limiter import check_rate_limit
        _run(check_rate_limit(None))

    def test_under_limit_passes(self):
        from dispute_center.services.rate_limiter import check_rate_limit

        mock_pipe = MagicMock()
        mock_pipe.execute = AsyncMock(return_value=[None, 5, None, None])
        mock_redis = MagicMock()
        mock_redis.pipeline.return_value = mock_pipe

        with patch(
            "dispute_center.services.rate_limiter._get_rate_limit_redis",
            return_value=mock_redis,
        ):
            _run(check_rate_limit(FakeApiKey(rate_limit_rpm=100)))

    def test_over_limit_raises_429(self):
        from dispute_center.services.rate_limiter import check_rate_limit

        mock_pipe = MagicMock()
        mock_pipe.execute = AsyncMock(return_value=[None, 10, None, None])
        mock_redis = MagicMock()
        mock_redis.pipeline.return_value = mock_pipe

        with patch(
            "dispute_center.services.rate_limiter._get_rate_limit_redis",
            return_value=mock_redis,
        ):
            with pytest.raises(HTTPException) as exc_info:
                _run(check_rate_limit(FakeApiKey(rate_limit_rpm=10)))
            assert exc_info.value.status_code == 429
            assert exc_info.value.headers["Retry-After"] == "60"

    def test_redis_unavailable_allows_through(self):
        from dispute_center.services.rate_limiter import check_rate_limit

        with patch(
            "dispute_center.services.rate_limiter._get_rate_limit_redis",
            side_effect=ConnectionError("Redis down"),
        ):
            _run(check_rate_limit(FakeApiKey(rate_limit_rpm=10)))


# ---------------------------------------------------------------------------
# 6. Inbox Fetch Throttle
# ---------------------------------------------------------------------------


class TestFetchInterval:
    """One inbox listing per user per interval."""

    def test_first_fetch_acquires(self):
        from dispute_center.services.rate_limiter import check_fetch_interval

        mock_redis = MagicMock()
        mock_redis.set = AsyncMock(return_value=True)

        with patch(
            "dispute_center.services.rate_limiter._get_rate_limit_redis",
            return_value=mock_redis,
        ):
            _run(check_fetch_interval("a@example.com", interval_ms=30_000))

        args, kwargs = mock_redis.set.call_args
        assert args[0] == "inbox:lastfetch:a@example.com"
        assert kwargs == {"nx": True, "px": 30_000}

    def test_second_fetch_reports_remaining_wait(self):
        from dispute_center.services.rate_limiter import check_fetch_interval

        mock_redis = MagicMock()
        mock_redis.set = AsyncMock(return_value=None)
        mock_redis.pttl = AsyncMock(return_value=12_345)

        with patch(
            "dispute_center.services.rate_limiter._get_rate_limit_redis",
            return_value=mock_redis,
        ):
            with pytest.raises(HTTPException) as exc_info:
                _run(check_fetch_interval("a@example.com", interval_ms=30_000))

        assert exc_info.value.status_code == 429
        assert exc_info.value.detail == {
            "error": "Rate limit exceeded",
            "retry_after_ms": 12_345,
        }
        assert exc_info.value.headers["Retry-After"] == "13"

    def test_zero_interval_disables_throttle(self):
        from dispute_center.services.rate_limiter import check_fetch_interval

        with patch(
            "dispute_center.services.rate_limiter._get_rate_limit_redis",
        ) as mock_get:
            _run(check_fetch_interval("a@example.com", interval_ms=0))
        mock_get.assert_not_called()

    def test_redis_unavailable_allows_fetch(self):
        from dispute_center.services.rate_limiter import check_fetch_interval

        with patch(
            "dispute_center.services.rate_limiter._get_rate_limit_redis",
            side_effect=ConnectionError("Redis down"),
        ):
            _run(check_fetch_interval("a@example.com", interval_ms=1_000))

"""Tests for token records and results."""

import pytest

from gcal_auth.oauth.tokens import (
    ClientCredentials,
    TokenFailure,
    TokenRecord,
    TokenResult,
    compute_expires_at_ms,
    is_valid_expiry,
    now_ms,
)


class TestTokenRecordValidity:
    """Tests for TokenRecord.is_access_token_valid."""

    NOW = 1_700_000_000_000

    def test_valid_token(self):
        """Test that a present token with future expiry is valid."""
        record = TokenRecord(access_token="a", expires_at_ms=self.NOW + 1000)
        assert record.is_access_token_valid(now=self.NOW)

    @pytest.mark.parametrize(
        "record",
        [
            TokenRecord(access_token=None, expires_at_ms=NOW + 1000),
            TokenRecord(access_token="", expires_at_ms=NOW + 1000),
            TokenRecord(access_token="a", expires_at_ms=None),
            TokenRecord(access_token="a", expires_at_ms=0),
            TokenRecord(access_token="a", expires_at_ms="tomorrow"),
            TokenRecord(access_token="a", expires_at_ms=float("nan")),
            TokenRecord(access_token="a", expires_at_ms=True),
            TokenRecord(access_token="a", expires_at_ms=NOW - 1),
            TokenRecord(access_token="a", expires_at_ms=NOW),
        ],
        ids=[
            "no-token",
            "empty-token",
            "no-expiry",
            "zero-expiry",
            "text-expiry",
            "nan-expiry",
            "bool-expiry",
            "past-expiry",
            "expiry-now",
        ],
    )
    def test_invalid_tokens(self, record: TokenRecord):
        """Test every failing validity condition."""
        assert not record.is_access_token_valid(now=self.NOW)

    def test_uses_current_time_by_default(self):
        """Test that the wall clock is used without an explicit now."""
        assert TokenRecord(access_token="a", expires_at_ms=now_ms() + 60_000).is_access_token_valid()
        assert not TokenRecord(access_token="a", expires_at_ms=now_ms() - 60_000).is_access_token_valid()


class TestTokenRecordSerialization:
    """Tests for storage layout of TokenRecord."""

    def test_from_dict_missing_keys(self):
        """Test missing storage keys become None."""
        record = TokenRecord.from_dict({})
        assert record.access_token is None
        assert record.refresh_token is None
        assert record.expires_at_ms is None

    def test_storage_keys(self):
        """Test the three storage keys."""
        record = TokenRecord(access_token="a", refresh_token="r", expires_at_ms=5)
        assert record.to_dict() == {
            "access_token": "a",
            "refresh_token": "r",
            "expiration_time": 5,
        }

    def test_has_refresh_token(self):
        """Test refresh token presence check."""
        assert TokenRecord(refresh_token="r").has_refresh_token()
        assert not TokenRecord(refresh_token="").has_refresh_token()
        assert not TokenRecord().has_refresh_token()


class TestExpiryHelpers:
    """Tests for expiry computation helpers."""

    def test_compute_expires_at_ms(self):
        """Test expires_in seconds are added as milliseconds."""
        assert compute_expires_at_ms(3600, now=1000) == 1000 + 3_600_000

    def test_compute_accepts_numeric_strings(self):
        """Test string expires_in values are accepted."""
        assert compute_expires_at_ms("1800", now=0) == 1_800_000

    def test_compute_rejects_garbage(self):
        """Test non-numeric expires_in raises ValueError."""
        with pytest.raises(ValueError):
            compute_expires_at_ms("soon", now=0)

    def test_is_valid_expiry(self):
        """Test numeric check for stored expiry values."""
        assert is_valid_expiry(1)
        assert is_valid_expiry(1.5)
        assert not is_valid_expiry("1")
        assert not is_valid_expiry(None)
        assert not is_valid_expiry(False)
        assert not is_valid_expiry(float("nan"))


class TestTokenResult:
    """Tests for TokenResult."""

    def test_success(self):
        """Test a successful result."""
        result = TokenResult.success("abc")
        assert result.ok
        assert result.reason is None
        assert result.get_auth_header() == "Bearer abc"

    def test_failure(self):
        """Test a failed result carries its reason."""
        result = TokenResult.failure(TokenFailure.REFRESH_FAILED)
        assert not result.ok
        assert result.token is None
        assert result.reason == TokenFailure.REFRESH_FAILED
        assert result.get_auth_header() is None


class TestClientCredentials:
    """Tests for ClientCredentials."""

    def test_public_client(self):
        assert not ClientCredentials(client_id="id").is_confidential()

    def test_confidential_client(self):
        assert ClientCredentials(client_id="id", client_secret="s").is_confidential()
        assert not ClientCredentials(client_id="id", client_secret="").is_confidential()

"""Tests for the error taxonomy."""

from ReBrowse.errors import (
    AuthFailedError,
    FileTooLargeError,
    NetworkError,
    OfflineError,
    RateLimitError,
    ReBrowseError,
    TokenExpiredError,
    UnknownError,
    to_error,
)


class TestToDict:
    def test_default_message(self):
        data = AuthFailedError().to_dict()
        assert data == {
            "code": "AUTH_FAILED",
            "message": "Authentication failed. Please check your credentials.",
            "retryable": False,
        }

    def test_status_code_included(self):
        assert NetworkError(status_code=503).to_dict()["statusCode"] == 503

    def test_rate_limit_carries_retry_after(self):
        data = RateLimitError(42).to_dict()
        assert data["code"] == "RATE_LIMIT"
        assert data["retryable"] is True
        assert data["retryAfterSeconds"] == 42
        assert "42s" in data["message"]

    def test_negative_retry_after_clamped(self):
        assert RateLimitError(-5).retry_after_seconds == 0

    def test_file_too_large(self):
        err = FileTooLargeError("big.md", 20_000_000, 10_485_760)
        assert err.code == "FILE_TOO_LARGE"
        assert "big.md" in err.message
        assert err.retryable is False


class TestRetryable:
    def test_class_defaults(self):
        assert NetworkError().retryable is True
        assert OfflineError().retryable is True
        assert AuthFailedError().retryable is False

    def test_override(self):
        assert NetworkError(retryable=False).retryable is False

    def test_subclass_codes(self):
        assert isinstance(TokenExpiredError(), AuthFailedError)
        assert TokenExpiredError().code == "TOKEN_EXPIRED"


class TestToError:
    def test_passthrough(self):
        err = NetworkError()
        assert to_error(err) is err

    def test_wraps_unknown_exception(self):
        cause = RuntimeError("boom ghp_secret")
        err = to_error(cause)
        assert isinstance(err, UnknownError)
        assert isinstance(err, ReBrowseError)
        assert err.__cause__ is cause
        assert "ghp_secret" not in err.message

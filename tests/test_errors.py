"""Unit tests for errors.py - Error taxonomy."""

from errors import (
    AuthenticationError,
    ConfigError,
    ConfigLookupError,
    ConflictError,
    CredentialsError,
    DialError,
    ExecutionError,
    ReconcileError,
    TrackUsageError,
    TypeMismatchError,
)


class TestErrorKinds:
    def test_config_errors_share_reason(self):
        for cls in (TrackUsageError, ConfigLookupError, CredentialsError):
            assert issubclass(cls, ConfigError)
            assert cls("x").reason == "ConfigError"

    def test_authentication_is_a_credentials_error(self):
        assert issubclass(AuthenticationError, CredentialsError)
        assert AuthenticationError("x").reason == "ConfigError"

    def test_only_type_mismatch_is_terminal(self):
        assert TypeMismatchError("x").retryable is False
        for cls in (ConfigError, DialError, ExecutionError, ReconcileError):
            assert cls("x").retryable is True

    def test_conflict_is_not_a_reconcile_error(self):
        error = ConflictError(7, 3)
        assert not isinstance(error, ReconcileError)
        assert error.resource_id == 7
        assert error.resource_version == 3
        assert "7" in str(error)


class TestWrap:
    def test_prefixes_message(self):
        error = DialError("connection refused")

        wrapped = error.wrap("cannot create new client")

        assert str(wrapped) == "cannot create new client: connection refused"
        assert wrapped.message == str(wrapped)

    def test_keeps_kind_and_chains(self):
        error = ConfigLookupError("not found")

        wrapped = error.wrap("connect failed")

        assert type(wrapped) is ConfigLookupError
        assert wrapped.reason == "ConfigError"
        assert wrapped.__cause__ is error

    def test_nested_wraps(self):
        error = DialError("refused").wrap("cannot create new client").wrap(
            "connect failed"
        )

        assert str(error) == "connect failed: cannot create new client: refused"

    def test_execution_error_keeps_output(self):
        error = ExecutionError("exit status 1", output=b"permission denied")

        wrapped = error.wrap("cannot create file")

        assert isinstance(wrapped, ExecutionError)
        assert wrapped.output == b"permission denied"

    def test_execution_error_output_defaults_to_empty(self):
        assert ExecutionError("boom").output == b""

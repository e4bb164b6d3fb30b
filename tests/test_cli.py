"""Tests for the gcal-auth CLI."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from gcal_auth.cli import main
from gcal_auth.config import Settings
from gcal_auth.oauth import (
    AuthStatus,
    CallbackError,
    CallbackTimeoutError,
    LoginNotConfiguredError,
    MissingRefreshTokenError,
    TokenFailure,
    TokenRecord,
    TokenResult,
)


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(store_dir=tmp_path / "store")


@pytest.fixture
def mock_manager(settings: Settings):
    """Patch settings loading and the AuthManager used by the CLI."""
    manager = MagicMock()
    manager.login = AsyncMock(
        return_value=TokenRecord(access_token="a", refresh_token="r", expires_at_ms=123)
    )
    manager.ensure_access_token = AsyncMock(return_value=TokenResult.success("ya29.token"))
    manager.logout = AsyncMock(return_value=True)
    manager.get_auth_status.return_value = AuthStatus(
        logged_in=True, access_token_valid=True, expires_in_human="45 minutes"
    )

    with patch("gcal_auth.cli.load_settings", return_value=settings), patch(
        "gcal_auth.cli.AuthManager", return_value=manager
    ) as manager_cls:
        manager.cls = manager_cls
        yield manager


class TestMain:
    """Tests for the command group."""

    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("login", "status", "token", "logout"):
            assert command in result.output

    def test_invalid_settings_json(self, runner: CliRunner, tmp_path: Path) -> None:
        settings_file = tmp_path / "settings.json"
        settings_file.write_text("{broken")

        result = runner.invoke(main, ["--json", "--settings", str(settings_file), "status"])

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["success"] is False
        assert data["error"]["type"] == "SettingsParseError"


class TestLoginCommand:
    """Tests for the login command."""

    def test_login_success(self, runner: CliRunner, mock_manager: MagicMock) -> None:
        result = runner.invoke(main, ["login"])

        assert result.exit_code == 0
        assert "Authentication successful" in result.output
        mock_manager.login.assert_awaited_once()

    def test_login_json(self, runner: CliRunner, mock_manager: MagicMock) -> None:
        result = runner.invoke(main, ["--json", "login"])

        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["data"] == {"logged_in": True, "client_mode": "broker", "expires_at_ms": 123}

    def test_login_timeout_option(
        self, runner: CliRunner, mock_manager: MagicMock, settings: Settings
    ) -> None:
        result = runner.invoke(main, ["login", "--timeout", "30"])

        assert result.exit_code == 0
        assert settings.callback_timeout == 30

    def test_login_reports_failures_once(self, runner: CliRunner, mock_manager: MagicMock) -> None:
        """Test that login failures are printed by the error handler, not as notices too."""
        runner.invoke(main, ["login"])

        assert mock_manager.cls.call_args.kwargs["on_notice"] is None

    @pytest.mark.parametrize("command", ["status", "token"])
    def test_notices_routed_to_terminal(
        self, runner: CliRunner, mock_manager: MagicMock, command: str
    ) -> None:
        runner.invoke(main, [command])

        assert callable(mock_manager.cls.call_args.kwargs["on_notice"])

    @pytest.mark.parametrize(
        "error,expected",
        [
            (LoginNotConfiguredError("missing secret"), "client secret"),
            (CallbackTimeoutError("Timeout waiting"), "not completed in time"),
            (CallbackError("Could not listen"), "callback port"),
            (MissingRefreshTokenError("no refresh token"), "no refresh token"),
        ],
        ids=["not-configured", "timeout", "port", "missing-refresh"],
    )
    def test_login_errors(
        self, runner: CliRunner, mock_manager: MagicMock, error: Exception, expected: str
    ) -> None:
        mock_manager.login.side_effect = error

        result = runner.invoke(main, ["login"])

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert expected in result.output


class TestStatusCommand:
    """Tests for the status command."""

    def test_status_human(self, runner: CliRunner, mock_manager: MagicMock) -> None:
        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Logged in" in result.output
        assert "45 minutes" in result.output

    def test_status_json(self, runner: CliRunner, mock_manager: MagicMock) -> None:
        result = runner.invoke(main, ["--json", "status"])

        data = json.loads(result.stdout)
        assert data["data"]["logged_in"] is True
        assert data["data"]["client_mode"] == "broker"


class TestTokenCommand:
    """Tests for the token command."""

    def test_token_printed(self, runner: CliRunner, mock_manager: MagicMock) -> None:
        result = runner.invoke(main, ["token"])

        assert result.exit_code == 0
        assert result.stdout.strip() == "ya29.token"

    def test_token_json(self, runner: CliRunner, mock_manager: MagicMock) -> None:
        result = runner.invoke(main, ["--json", "token"])

        assert json.loads(result.stdout)["data"] == {"access_token": "ya29.token"}

    @pytest.mark.parametrize("reason", list(TokenFailure))
    def test_token_unavailable(
        self, runner: CliRunner, mock_manager: MagicMock, reason: TokenFailure
    ) -> None:
        mock_manager.ensure_access_token.return_value = TokenResult.failure(reason)

        result = runner.invoke(main, ["--json", "token"])

        assert result.exit_code == 1
        error = json.loads(result.stdout)["error"]
        assert error["type"] == "TokenUnavailable"
        assert reason.value in error["message"]


class TestLogoutCommand:
    """Tests for the logout command."""

    def test_logout(self, runner: CliRunner, mock_manager: MagicMock) -> None:
        result = runner.invoke(main, ["logout"])

        assert result.exit_code == 0
        assert "Logged out" in result.output
        mock_manager.logout.assert_awaited_once_with(revoke=True)

    def test_logout_no_revoke(self, runner: CliRunner, mock_manager: MagicMock) -> None:
        runner.invoke(main, ["logout", "--no-revoke"])

        mock_manager.logout.assert_awaited_once_with(revoke=False)

    def test_logout_nothing_stored(self, runner: CliRunner, mock_manager: MagicMock) -> None:
        mock_manager.logout.return_value = False

        result = runner.invoke(main, ["logout"])

        assert "No stored credentials" in result.output

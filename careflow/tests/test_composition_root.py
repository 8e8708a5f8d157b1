"""Integration tests for the composition root.

These tests verify that configuration loads and validates, that
build_application wires the SQLite store, notifier and core services
together, and that logging can be switched to JSON lines.
"""

import json
import logging
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from careflow.adapters.notification.slack import SlackNotificationAdapter
from careflow.adapters.notification.stdout import StdoutNotificationAdapter
from careflow.config import Settings, load_settings
from careflow.core.models import Actor, Channel, LeadRequest
from careflow.main import JsonLogFormatter, build_application, configure_logging


class TestConfigurationLoading:
    """Test configuration loading and validation."""

    def test_load_settings_with_defaults(self) -> None:
        settings = load_settings()
        assert settings.store_sqlite_path == "./data/careflow.db"
        assert settings.notification_backend == "stdout"
        assert settings.run_mode == "daemon"
        assert settings.automation_interval_seconds == 30
        assert settings.transition_max_attempts == 3
        assert settings.cli_role_set == frozenset({"admin"})

    def test_load_settings_from_env(self) -> None:
        with patch.dict(
            os.environ,
            {
                "RUN_MODE": "api",
                "API_PORT": "9090",
                "API_REQUIRE_AUTH": "true",
                "API_KEY": "secret",
                "CLI_ROLES": "coordinacion, doctor",
            },
        ):
            settings = load_settings()
            assert settings.run_mode == "api"
            assert settings.api_port == 9090
            assert settings.api_require_auth is True
            assert settings.cli_role_set == frozenset({"coordinacion", "doctor"})

    def test_load_settings_from_env_file(self, tmp_path: Path) -> None:
        env_file = tmp_path / "careflow.env"
        env_file.write_text("LOG_FORMAT=json\nAUTOMATION_BATCH_SIZE=25\n")

        settings = load_settings(str(env_file))

        assert settings.log_format == "json"
        assert settings.automation_batch_size == 25

    @pytest.mark.parametrize(
        "name,value",
        [
            ("AUTOMATION_INTERVAL_SECONDS", "0"),
            ("AUTOMATION_BATCH_SIZE", "-1"),
            ("PROCESSED_RETENTION_DAYS", "0"),
            ("TRANSITION_MAX_ATTEMPTS", "0"),
            ("API_PORT", "70000"),
            ("RUN_MODE", "batch"),
        ],
    )
    def test_invalid_values_rejected(self, name: str, value: str) -> None:
        with patch.dict(os.environ, {name: value}):
            with pytest.raises(ValidationError):
                load_settings()

    def test_slack_backend_needs_webhook(self) -> None:
        with pytest.raises(ValidationError, match="slack_webhook_url"):
            Settings(notification_backend="slack")


class TestBuildApplication:
    @pytest.mark.asyncio
    async def test_wires_stdout_backend(self, tmp_path: Path) -> None:
        settings = Settings(store_sqlite_path=str(tmp_path / "careflow.db"))

        app = build_application(settings)
        try:
            assert isinstance(app.notification, StdoutNotificationAdapter)
            assert app.workflow.transitions.max_attempts == 3
            assert app.automation.notifier is app.notification
            assert app.workflow.access is app.access

            await app.store.init_schema()
            result = await app.workflow.create_lead(
                Actor(user_id="u-1", roles=frozenset({"coordinacion"})),
                LeadRequest(channel=Channel.WEB, patient_id="pat-1", auto_qualify=True),
            )
            assert result["state"] == "TRIAGE"
            view = await app.workflow.get_episode(result["episode_id"])
            assert view.episode.owner_user_id == "u-1"
        finally:
            await app.close()

    @pytest.mark.asyncio
    async def test_wires_slack_backend(self, tmp_path: Path) -> None:
        settings = Settings(
            store_sqlite_path=str(tmp_path / "careflow.db"),
            notification_backend="slack",
            slack_webhook_url="https://hooks.slack.test/services/T/B/X",
            transition_max_attempts=5,
        )

        app = build_application(settings)
        try:
            assert isinstance(app.notification, SlackNotificationAdapter)
            assert app.workflow.transitions.max_attempts == 5
        finally:
            await app.close()


class TestLogging:
    def test_json_formatter_includes_extra_fields(self) -> None:
        record = logging.LogRecord(
            "careflow.core.workflow", logging.INFO, __file__, 1, "Lead opened", None, None
        )
        record.episode_id = "ep-1"

        payload = json.loads(JsonLogFormatter().format(record))

        assert payload["level"] == "INFO"
        assert payload["logger"] == "careflow.core.workflow"
        assert payload["message"] == "Lead opened"
        assert payload["episode_id"] == "ep-1"

    def test_configure_logging_sets_level_and_format(self) -> None:
        configure_logging("WARNING", "json")
        try:
            root = logging.getLogger()
            assert root.level == logging.WARNING
            assert isinstance(root.handlers[0].formatter, JsonLogFormatter)
        finally:
            configure_logging("INFO", "text")

"""Composition root for careflow.

This module is the ONLY location that imports both core domain logic
and concrete adapter implementations. All wiring of dependencies
happens here, creating a clear entry point for the application.

Module Structure:
- Configuration loading via config module
- Adapter instantiation
- Core service initialization
- Entry point selection (daemon, CLI, API)
"""

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any

from careflow.adapters.access.roles import RoleAccessPolicy
from careflow.adapters.api.http_server import ApiHTTPServer
from careflow.adapters.api.receiver import ApiReceiver
from careflow.adapters.cli.commands import CLICommandHandler, run_command
from careflow.adapters.notification.slack import SlackNotificationAdapter
from careflow.adapters.notification.stdout import StdoutNotificationAdapter
from careflow.adapters.scheduler.daemon import AutomationScheduler
from careflow.adapters.store.sqlite import SQLiteDocumentStore
from careflow.config import Settings, load_settings
from careflow.core.automation import AutomationService
from careflow.core.guards import GuardContextResolver
from careflow.core.machine import EpisodeStateMachine
from careflow.core.models import Actor
from careflow.core.ports import AccessPolicyPort, NotificationPort
from careflow.core.queries import EpisodeQueries
from careflow.core.transitions import EpisodeTransitionService
from careflow.core.workflow import WorkflowService

# Attributes every LogRecord carries; anything else came in through extra={}
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime"}


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, including fields passed via extra."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(log_level: str, log_format: str) -> None:
    """Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json, text).
    """
    level = getattr(logging, log_level, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    logging.basicConfig(level=level, handlers=[handler], force=True)


@dataclass
class Application:
    """Wired adapters and services for one process."""

    settings: Settings
    store: SQLiteDocumentStore
    notification: NotificationPort
    workflow: WorkflowService
    automation: AutomationService
    access: AccessPolicyPort

    async def close(self) -> None:
        await self.store.close_pool()
        close = getattr(self.notification, "close", None)
        if close is not None:
            await close()


def build_application(settings: Settings) -> Application:
    """Instantiate adapters and core services from settings."""
    logger = logging.getLogger(__name__)

    store = SQLiteDocumentStore(
        db_path=settings.store_sqlite_path,
        pool_size=settings.store_pool_size,
    )
    logger.info(f"Store initialized: {settings.store_sqlite_path}")

    notification: NotificationPort
    if settings.notification_backend == "slack":
        notification = SlackNotificationAdapter(
            webhook_url=settings.slack_webhook_url,
            timeout_seconds=settings.notification_timeout_seconds,
        )
        logger.info("Notification adapter: Slack")
    else:
        notification = StdoutNotificationAdapter()
        logger.info("Notification adapter: Stdout")

    access = RoleAccessPolicy()
    transitions = EpisodeTransitionService(
        episodes=store.episodes,
        machine=EpisodeStateMachine(),
        max_attempts=settings.transition_max_attempts,
    )
    workflow = WorkflowService(
        episodes=store.episodes,
        events=store.events,
        records_store=store.records,
        access=access,
        transitions=transitions,
        guards=GuardContextResolver(store.records),
        queries=EpisodeQueries(store.episodes, store.events, store.records),
    )
    automation = AutomationService(
        events=store.events,
        records_store=store.records,
        notifier=notification,
    )
    return Application(
        settings=settings,
        store=store,
        notification=notification,
        workflow=workflow,
        automation=automation,
        access=access,
    )


async def _run_cli_interactive(cli_handler: CLICommandHandler) -> None:
    """Run interactive CLI loop.

    Each line is a command name followed by an optional JSON object of
    arguments, e.g. `timeline {"episode_id": "..."}`.
    """
    logger = logging.getLogger(__name__)
    logger.info("Starting interactive CLI. Type 'help' for available commands or 'exit' to quit.")

    loop = asyncio.get_running_loop()

    while True:
        try:
            command_line = await loop.run_in_executor(None, input, "careflow> ")
            command_line = command_line.strip()

            if not command_line:
                continue
            if command_line.lower() == "exit":
                logger.info("Exiting CLI")
                break
            if command_line.lower() == "help":
                _print_cli_help()
                continue

            parts = command_line.split(maxsplit=1)
            command = parts[0].lower()
            args_str = parts[1] if len(parts) > 1 else ""

            try:
                args = json.loads(args_str) if args_str else {}
            except json.JSONDecodeError:
                logger.error("Invalid JSON arguments. Use 'help' for command syntax.")
                continue
            if not isinstance(args, dict):
                logger.error("Arguments must be a JSON object.")
                continue

            try:
                result = await run_command(cli_handler, command, args)
                _print_result(result)
            except Exception as e:
                logger.error(f"Command execution error: {e}", exc_info=True)
                print(json.dumps({"status": "error", "message": str(e)}, indent=2))

        except EOFError:
            logger.info("EOF received, exiting CLI")
            break
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
            continue


def _print_result(result: dict[str, Any]) -> None:
    if isinstance(result.get("data"), str):
        print(result["data"])
    else:
        print(json.dumps(result, indent=2, default=str))


def _print_cli_help() -> None:
    help_text = """
Available Commands (JSON arguments):

  list       {"state": "TRIAGE", "limit": 20, "format": "text"}
  show       {"episode_id": "..."} or {"episode_ids": ["...", "..."]}
  timeline   {"episode_id": "...", "limit": 50}
  counts     {"format": "text"}
  advance    {"episode_id": "...", "trigger": "Plan.Created",
              "context": {"has_base_consent": true}, "reason": "..."}
  process    {"after_sequence": 0, "limit": 100}
  purge      {"older_than_days": 30}
  help
  exit
    """
    print(help_text)


async def bootstrap(settings: Settings | None = None) -> None:
    """Load configuration, wire adapters, and start the application.

    Raises:
        asyncio.CancelledError: On graceful shutdown signal
    """
    settings = settings or load_settings()

    configure_logging("DEBUG" if settings.debug else settings.log_level, settings.log_format)
    logger = logging.getLogger(__name__)
    logger.info("Loading careflow...")

    app = build_application(settings)

    logger.info(f"Starting in {settings.run_mode} mode...")
    try:
        await app.store.init_schema()

        if settings.run_mode == "daemon":
            scheduler = AutomationScheduler(
                automation=app.automation,
                interval_seconds=settings.automation_interval_seconds,
                batch_size=settings.automation_batch_size,
                purge_every_cycles=settings.purge_every_cycles,
                retention_days=settings.processed_retention_days,
                cursor_store=app.store.records,
            )
            await scheduler.start()

        elif settings.run_mode == "cli":
            cli_handler = CLICommandHandler(
                app.workflow,
                app.automation,
                Actor(user_id=settings.cli_user_id, roles=settings.cli_role_set),
            )
            await _run_cli_interactive(cli_handler)

        elif settings.run_mode == "api":
            receiver = ApiReceiver(
                workflow=app.workflow, automation=app.automation, access=app.access
            )
            http_server = ApiHTTPServer(
                receiver=receiver,
                host=settings.api_host,
                port=settings.api_port,
                api_key=settings.api_key or None,
                require_auth=settings.api_require_auth,
            )
            await http_server.start()
            try:
                while True:
                    await asyncio.sleep(1)
            finally:
                await http_server.stop()

    finally:
        await app.close()


def main() -> None:
    """Application entry point.

    Exit codes:
        0: Successful shutdown
        1: Fatal bootstrap or runtime error
        130: Interrupted by user (SIGINT/KeyboardInterrupt)
    """
    logger = logging.getLogger(__name__)
    try:
        asyncio.run(bootstrap())
    except KeyboardInterrupt:
        logger.warning("Shutdown requested by user (SIGINT)")
        sys.exit(130)
    except asyncio.CancelledError:
        logger.info("Graceful shutdown completed")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

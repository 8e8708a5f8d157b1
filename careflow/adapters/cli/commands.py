"""CLI command implementations for careflow operations staff.

Provides human-initiated actions through a command-line interface:
inspecting episodes, forcing a transition, and driving automation by
hand. Each command returns a dict with a status field; domain errors are
reported in the dict instead of raised.
"""

import logging
from typing import Any

from careflow.adapters.serialization import (
    episode_view_to_dict,
    event_to_dict,
    process_result_to_dict,
    state_counts_to_dict,
    transition_result_to_dict,
)
from careflow.core.exceptions import CareflowError
from careflow.core.models import Actor, EpisodeState, EpisodeView, GuardContext, Trigger
from careflow.core.ports import AutomationPort, WorkflowPort

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("json", "text")


class CLICommandHandler:
    """Handles CLI commands by delegating to WorkflowPort and AutomationPort."""

    def __init__(self, workflow: WorkflowPort, automation: AutomationPort, actor: Actor):
        """Initialize the CLI command handler.

        Args:
            workflow: WorkflowPort implementation for episode operations.
            automation: AutomationPort implementation for automation runs.
            actor: Staff identity the CLI acts as.
        """
        self.workflow = workflow
        self.automation = automation
        self.actor = actor

    async def list_episodes(
        self,
        state: str | None = None,
        limit: int | None = None,
        output_format: str = "json",
    ) -> dict[str, Any]:
        try:
            state_filter = EpisodeState(state) if state else None
        except ValueError:
            return self._error("list", f"Unknown state: {state}")
        if output_format not in OUTPUT_FORMATS:
            return self._error("list", f"Unsupported format: {output_format}")

        views = await self.workflow.list_episodes(state=state_filter, limit=limit)
        if output_format == "text":
            data: Any = "\n".join(self._format_summary_line(v) for v in views) or "No episodes"
        else:
            data = [episode_view_to_dict(v) for v in views]
        return {"status": "success", "operation": "list", "count": len(views), "data": data}

    async def show_episodes(
        self, episode_ids: list[str], output_format: str = "json"
    ) -> dict[str, Any]:
        """Show one or more episodes with their patients.

        Unknown ids are reported under `missing` rather than failing the
        whole command.
        """
        if not episode_ids:
            return self._error("show", "At least one episode_id is required")
        if output_format not in OUTPUT_FORMATS:
            return self._error("show", f"Unsupported format: {output_format}")

        views = await self.workflow.get_episodes(episode_ids)
        found = {v.episode.id for v in views}
        missing = [episode_id for episode_id in episode_ids if episode_id not in found]

        if output_format == "text":
            data: Any = "\n\n".join(self._format_episode_as_text(v) for v in views)
        else:
            data = [episode_view_to_dict(v) for v in views]
        result: dict[str, Any] = {"status": "success", "operation": "show", "data": data}
        if missing:
            result["missing"] = missing
        return result

    async def timeline(
        self, episode_id: str, limit: int | None = None, output_format: str = "json"
    ) -> dict[str, Any]:
        if output_format not in OUTPUT_FORMATS:
            return self._error("timeline", f"Unsupported format: {output_format}")
        try:
            events = await self.workflow.get_timeline(episode_id, limit=limit)
        except CareflowError as e:
            logger.error(f"Failed to load timeline: {e}")
            return self._error("timeline", str(e), episode_id=episode_id)

        if output_format == "text":
            data: Any = "\n".join(
                f"{e.timestamp.isoformat()}  {e.type:<28} {e.actor_user_id or '-'}"
                for e in events
            )
        else:
            data = [event_to_dict(e) for e in events]
        return {
            "status": "success",
            "operation": "timeline",
            "episode_id": episode_id,
            "data": data,
        }

    async def state_counts(self, output_format: str = "json") -> dict[str, Any]:
        counts = await self.workflow.state_counts()
        if output_format == "text":
            data: Any = "\n".join(f"{c.state.label:<24} {c.total:>6}" for c in counts)
        else:
            data = state_counts_to_dict(counts)
        return {"status": "success", "operation": "counts", "data": data}

    async def advance_episode(
        self,
        episode_id: str,
        trigger: str,
        context: dict[str, Any] | None = None,
        reason: str | None = None,
        verbose: bool = False,
    ) -> dict[str, Any]:
        """Force a trigger on an episode.

        Args:
            episode_id: Episode to move.
            trigger: Trigger value, e.g. "Plan.Created".
            context: Guard facts to assert in addition to stored ones.
            reason: Optional note stored in the event meta.
            verbose: If True, log the outcome.

        Returns:
            Dictionary with status and the transition result.
        """
        try:
            trigger_value = Trigger(trigger)
            asserted = GuardContext.from_mapping(context)
        except ValueError as e:
            return self._error("advance", str(e), episode_id=episode_id)

        meta = {"reason": reason, "source": "cli"} if reason else {"source": "cli"}
        try:
            result = await self.workflow.advance_episode(
                self.actor, episode_id, trigger_value, asserted, meta
            )
        except CareflowError as e:
            logger.error(f"Failed to advance episode: {e}")
            return self._error("advance", str(e), episode_id=episode_id)

        if verbose:
            logger.info(
                f"Advance {episode_id} with {trigger}: {result.outcome.value}",
                extra={"episode_id": episode_id, "verbose": True},
            )
        return {
            "status": "success",
            "operation": "advance",
            "episode_id": episode_id,
            "data": transition_result_to_dict(result),
        }

    async def process_pending(
        self, after_sequence: int = 0, limit: int = 100
    ) -> dict[str, Any]:
        result = await self.automation.process_pending(after_sequence=after_sequence, limit=limit)
        return {
            "status": "success",
            "operation": "process",
            "data": process_result_to_dict(result),
        }

    async def purge_processed(self, older_than_days: int = 30) -> dict[str, Any]:
        try:
            deleted = await self.automation.purge_processed(older_than_days=older_than_days)
        except ValueError as e:
            return self._error("purge", str(e))
        return {
            "status": "success",
            "operation": "purge",
            "deleted": deleted,
            "message": f"Purged {deleted} automation marks older than {older_than_days} days",
        }

    @staticmethod
    def _error(operation: str, message: str, **fields: Any) -> dict[str, Any]:
        return {"status": "error", "operation": operation, **fields, "message": message}

    @staticmethod
    def _format_summary_line(view: EpisodeView) -> str:
        episode = view.episode
        name = view.patient.full_name if view.patient else episode.patient_id
        return (
            f"{episode.id}  {episode.state.label:<20} {name:<28} "
            f"{episode.updated_at.strftime('%Y-%m-%d %H:%M')}"
        )

    @staticmethod
    def _format_episode_as_text(view: EpisodeView) -> str:
        episode = view.episode
        lines = [
            f"Episode ID: {episode.id}",
            f"State: {episode.state.label} ({episode.state.value})",
            f"Started: {episode.started_at.isoformat()}",
            f"Updated: {episode.updated_at.isoformat()}",
        ]
        if view.patient:
            lines.append(f"Patient: {view.patient.full_name} ({view.patient.id})")
        else:
            lines.append(f"Patient: {episode.patient_id}")
        if episode.reason:
            lines.append(f"Reason: {episode.reason}")
        if episode.tags:
            lines.append(f"Tags: {', '.join(episode.tags)}")
        if episode.risk_flags:
            lines.append(f"Risk flags: {', '.join(episode.risk_flags)}")
        if episode.closed_at:
            lines.append(f"Closed: {episode.closed_at.isoformat()} ({episode.discharge_reason or 'no reason'})")
        if episode.recall_at:
            lines.append(f"Recall: {episode.recall_at.isoformat()}")
        return "\n".join(lines)


async def run_command(
    handler: CLICommandHandler,
    command: str,
    args: dict[str, Any],
) -> dict[str, Any]:
    """Run a CLI command by name.

    Raises:
        ValueError: If the command is unknown or a required argument is missing.
    """
    output_format = args.get("format", "json")

    if command == "list":
        return await handler.list_episodes(
            state=args.get("state"), limit=args.get("limit"), output_format=output_format
        )

    elif command == "show":
        episode_ids = args.get("episode_ids") or (
            [args["episode_id"]] if "episode_id" in args else []
        )
        if not episode_ids:
            raise ValueError("Missing required parameter: episode_id or episode_ids")
        return await handler.show_episodes(list(episode_ids), output_format)

    elif command == "timeline":
        if "episode_id" not in args:
            raise ValueError("Missing required parameter: episode_id")
        return await handler.timeline(args["episode_id"], args.get("limit"), output_format)

    elif command == "counts":
        return await handler.state_counts(output_format)

    elif command == "advance":
        for required in ("episode_id", "trigger"):
            if required not in args:
                raise ValueError(f"Missing required parameter: {required}")
        return await handler.advance_episode(
            args["episode_id"],
            args["trigger"],
            context=args.get("context"),
            reason=args.get("reason"),
            verbose=args.get("verbose", False),
        )

    elif command == "process":
        return await handler.process_pending(
            after_sequence=args.get("after_sequence", 0), limit=args.get("limit", 100)
        )

    elif command == "purge":
        return await handler.purge_processed(args.get("older_than_days", 30))

    else:
        raise ValueError(f"Unknown command: {command}. Use 'help' for available commands.")

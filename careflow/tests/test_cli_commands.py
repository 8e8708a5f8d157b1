"""Unit tests for CLI command handling.

Tests verify that the CLI commands:
- Render episode data as JSON-ready dicts or text
- Report domain errors in the result instead of raising
- Route command names and arguments through run_command
"""

from dataclasses import replace

import pytest

from careflow.adapters.cli.commands import CLICommandHandler, run_command
from careflow.core.exceptions import PermissionDenied
from careflow.core.models import (
    Actor,
    EpisodeState,
    EpisodeView,
    Patient,
    ProcessResult,
    QuoteStatus,
    Trigger,
)
from careflow.tests.fakes import FakeAutomationPort, FakeWorkflowPort, make_episode

CLI_ACTOR = Actor(user_id="cli", roles=frozenset({"admin"}))


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def workflow() -> FakeWorkflowPort:
    fake = FakeWorkflowPort()
    fake.add_episode(make_episode("ep-1", EpisodeState.TRIAGE))
    fake.add_episode(make_episode("ep-2", EpisodeState.BUDGET, patient_id="pat-2"))
    return fake


@pytest.fixture
def automation() -> FakeAutomationPort:
    return FakeAutomationPort()


@pytest.fixture
def handler(workflow: FakeWorkflowPort, automation: FakeAutomationPort) -> CLICommandHandler:
    return CLICommandHandler(workflow, automation, CLI_ACTOR)


# ============================================================================
# Queries
# ============================================================================


class TestListAndShow:
    @pytest.mark.asyncio
    async def test_list_json(self, handler: CLICommandHandler) -> None:
        result = await handler.list_episodes(state="BUDGET")

        assert result["status"] == "success"
        assert result["count"] == 1
        assert result["data"][0]["id"] == "ep-2"

    @pytest.mark.asyncio
    async def test_list_text_uses_patient_name(
        self, handler: CLICommandHandler, workflow: FakeWorkflowPort
    ) -> None:
        view = workflow.views["ep-1"]
        workflow.views["ep-1"] = EpisodeView(
            episode=view.episode,
            patient=Patient(id="pat-1", full_name="Ana Ruiz", created_at=view.episode.started_at),
        )

        result = await handler.list_episodes(output_format="text")

        lines = result["data"].splitlines()
        assert len(lines) == 2
        assert lines[0].startswith("ep-1  Triage")
        assert "Ana Ruiz" in lines[0]
        assert "pat-2" in lines[1]

    @pytest.mark.asyncio
    async def test_list_rejects_bad_input(self, handler: CLICommandHandler) -> None:
        bad_state = await handler.list_episodes(state="LIMBO")
        bad_format = await handler.list_episodes(output_format="xml")

        assert bad_state == {
            "status": "error",
            "operation": "list",
            "message": "Unknown state: LIMBO",
        }
        assert bad_format["message"] == "Unsupported format: xml"

    @pytest.mark.asyncio
    async def test_show_reports_missing_ids(
        self, handler: CLICommandHandler, workflow: FakeWorkflowPort
    ) -> None:
        workflow.views["ep-1"] = replace(
            workflow.views["ep-1"],
            episode=replace(workflow.views["ep-1"].episode, risk_flags=("anticoagulado",)),
        )

        result = await handler.show_episodes(["ep-1", "ep-9"], output_format="text")

        assert result["missing"] == ["ep-9"]
        assert "Episode ID: ep-1" in result["data"]
        assert "State: Triage (TRIAGE)" in result["data"]
        assert "Risk flags: anticoagulado" in result["data"]

    @pytest.mark.asyncio
    async def test_show_requires_ids(self, handler: CLICommandHandler) -> None:
        result = await handler.show_episodes([])
        assert result["status"] == "error"

    @pytest.mark.asyncio
    async def test_timeline_unknown_episode(self, handler: CLICommandHandler) -> None:
        result = await handler.timeline("ep-404")

        assert result["status"] == "error"
        assert result["episode_id"] == "ep-404"
        assert "not found" in result["message"]

    @pytest.mark.asyncio
    async def test_counts_text(self, handler: CLICommandHandler) -> None:
        result = await handler.state_counts(output_format="text")

        lines = result["data"].splitlines()
        assert len(lines) == len(EpisodeState)
        assert lines[0].startswith("Capture")


# ============================================================================
# Advance and automation
# ============================================================================


class TestAdvance:
    @pytest.mark.asyncio
    async def test_advance_passes_context_and_reason(
        self, handler: CLICommandHandler, workflow: FakeWorkflowPort
    ) -> None:
        result = await handler.advance_episode(
            "ep-2",
            "Quote.Accepted",
            context={"has_specific_consent": True, "quote_status": "ACCEPTED"},
            reason="paper consent scanned",
        )

        assert result["status"] == "success"
        assert result["data"]["previous_state"] == "BUDGET"
        name, actor, (episode_id, trigger, asserted, meta) = workflow.last_call()
        assert name == "advance_episode"
        assert actor == CLI_ACTOR
        assert trigger is Trigger.QUOTE_ACCEPTED
        assert asserted.quote_status is QuoteStatus.ACCEPTED
        assert meta == {"reason": "paper consent scanned", "source": "cli"}

    @pytest.mark.asyncio
    async def test_advance_bad_trigger(
        self, handler: CLICommandHandler, workflow: FakeWorkflowPort
    ) -> None:
        result = await handler.advance_episode("ep-1", "Lead.Teleported")

        assert result["status"] == "error"
        assert result["operation"] == "advance"
        assert not any(name == "advance_episode" for name, _, _ in workflow.calls)

    @pytest.mark.asyncio
    async def test_advance_domain_error(
        self, handler: CLICommandHandler, workflow: FakeWorkflowPort
    ) -> None:
        workflow.error = PermissionDenied("cli", "advance_episode")

        result = await handler.advance_episode("ep-1", "Triage.Routed")

        assert result["status"] == "error"
        assert "not allowed" in result["message"]


class TestAutomationCommands:
    @pytest.mark.asyncio
    async def test_process(
        self, handler: CLICommandHandler, automation: FakeAutomationPort
    ) -> None:
        automation.results.append(
            ProcessResult(
                events_seen=2, processed=1, duplicates=1, unhandled=0, failed=0, last_sequence=8
            )
        )

        result = await handler.process_pending(after_sequence=6, limit=20)

        assert automation.process_calls == [(6, 20)]
        assert result["data"]["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_purge(self, handler: CLICommandHandler, automation: FakeAutomationPort) -> None:
        automation.purge_result = 12

        ok = await handler.purge_processed(14)
        rejected = await handler.purge_processed(0)

        assert ok["deleted"] == 12
        assert ok["message"] == "Purged 12 automation marks older than 14 days"
        assert rejected["status"] == "error"


# ============================================================================
# run_command
# ============================================================================


class TestRunCommand:
    @pytest.mark.asyncio
    async def test_routes_commands(
        self, handler: CLICommandHandler, workflow: FakeWorkflowPort
    ) -> None:
        listed = await run_command(handler, "list", {"state": "TRIAGE", "limit": 5})
        shown = await run_command(handler, "show", {"episode_id": "ep-2"})
        counts = await run_command(handler, "counts", {"format": "json"})
        timeline = await run_command(handler, "timeline", {"episode_id": "ep-1", "limit": 3})

        assert listed["operation"] == "list"
        assert shown["data"][0]["id"] == "ep-2"
        assert counts["operation"] == "counts"
        assert timeline["operation"] == "timeline"
        assert workflow.last_call() == ("get_timeline", None, ("ep-1", 3))

    @pytest.mark.asyncio
    async def test_missing_parameters(self, handler: CLICommandHandler) -> None:
        with pytest.raises(ValueError, match="episode_id"):
            await run_command(handler, "timeline", {})
        with pytest.raises(ValueError, match="trigger"):
            await run_command(handler, "advance", {"episode_id": "ep-1"})
        with pytest.raises(ValueError, match="episode_id or episode_ids"):
            await run_command(handler, "show", {})

    @pytest.mark.asyncio
    async def test_unknown_command(self, handler: CLICommandHandler) -> None:
        with pytest.raises(ValueError, match="Unknown command: teleport"):
            await run_command(handler, "teleport", {})

    @pytest.mark.asyncio
    async def test_process_and_purge_defaults(
        self, handler: CLICommandHandler, automation: FakeAutomationPort
    ) -> None:
        await run_command(handler, "process", {})
        await run_command(handler, "purge", {})

        assert automation.process_calls == [(0, 100)]
        assert automation.purge_calls == [30]

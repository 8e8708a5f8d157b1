"""Automation reactions to logged domain events.

The scheduler feeds log entries through process_pending. Each event is
handled at most once: a mark in the automation-processed collection is
written before the handler runs and released again if the handler
fails, so a later cycle retries it. Derived documents use ids built
from the event id, so a retried handler overwrites instead of
duplicating.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from . import records
from .models import DomainEvent, EventType, FollowUpKind, ProcessResult
from .ports import AutomationPort, EventLogPort, NotificationPort, RecordStorePort
from .transitions import utc_now

logger = logging.getLogger(__name__)

PURGE_BATCH_SIZE = 500

Handler = Callable[[DomainEvent], Awaitable[None]]


class AutomationService(AutomationPort):
    """Runs one handler per event type, deduplicated by event id."""

    def __init__(
        self,
        events: EventLogPort,
        records_store: RecordStorePort,
        notifier: NotificationPort | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.events = events
        self.records = records_store
        self.notifier = notifier
        self.clock = clock
        self.handlers: dict[str, Handler] = {
            EventType.INVENTORY_DEDUCTED.value: self._on_inventory_deducted,
            EventType.FOLLOWUP_SCHEDULED.value: self._on_followup_scheduled,
            EventType.EPISODE_STATE_CHANGED.value: self._on_episode_state_changed,
            EventType.QUOTE_PRESENTED.value: self._on_quote_presented,
            EventType.QUOTE_ACCEPTED.value: self._on_quote_accepted,
        }

    async def process_event(self, event: DomainEvent) -> str:
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.debug(f"No automation handler for {event.type} ({event.id})")
            return "unhandled"

        if await self.records.get(records.AUTOMATION_PROCESSED, event.id) is not None:
            logger.debug(f"Event {event.id} already processed, skipping")
            return "duplicate"

        await self.records.set(
            records.AUTOMATION_PROCESSED,
            event.id,
            {
                "type": event.type,
                "processed_at": records.to_millis(self.clock()),
            },
        )

        try:
            await handler(event)
        except Exception as e:
            logger.error(
                f"Automation handler for {event.type} failed on event {event.id}: {e}",
                exc_info=True,
                extra={"event_id": event.id, "event_type": event.type},
            )
            await self.records.delete(records.AUTOMATION_PROCESSED, event.id)
            return "failed"

        logger.info(
            f"Processed {event.type} event {event.id}",
            extra={"event_id": event.id, "event_type": event.type},
        )
        return "processed"

    async def process_pending(
        self, after_sequence: int = 0, limit: int = 100
    ) -> ProcessResult:
        pending = await self.events.list_since(after_sequence, limit=limit)

        counts = {"processed": 0, "duplicate": 0, "unhandled": 0, "failed": 0}
        last_sequence = after_sequence
        for event in pending:
            outcome = await self.process_event(event)
            counts[outcome] += 1
            if event.sequence is not None and event.sequence > last_sequence:
                last_sequence = event.sequence

        if pending:
            logger.info(
                f"Automation cycle: {len(pending)} events, "
                f"{counts['processed']} processed, {counts['failed']} failed"
            )
        return ProcessResult(
            events_seen=len(pending),
            processed=counts["processed"],
            duplicates=counts["duplicate"],
            unhandled=counts["unhandled"],
            failed=counts["failed"],
            last_sequence=last_sequence,
        )

    async def purge_processed(self, older_than_days: int = 30) -> int:
        if older_than_days < 1:
            raise ValueError(f"older_than_days must be at least 1, got {older_than_days}")
        cutoff = records.to_millis(self.clock() - timedelta(days=older_than_days))

        total = 0
        while True:
            deleted = await self.records.delete_older_than(
                records.AUTOMATION_PROCESSED, "processed_at", cutoff, PURGE_BATCH_SIZE
            )
            total += deleted
            if deleted < PURGE_BATCH_SIZE:
                break

        logger.info(
            f"Purged {total} automation marks older than {older_than_days} days",
            extra={"deleted": total, "older_than_days": older_than_days},
        )
        return total

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_inventory_deducted(self, event: DomainEvent) -> None:
        sku = event.meta.get("sku")
        qty = event.meta.get("qty")
        summary = f"Restock SKU {sku or 'unknown'} ({qty if qty is not None else '?'} units)"
        await self.records.set(
            records.TASKS,
            f"inventory-{event.id}",
            {
                "type": "INVENTORY_ALERT",
                "status": "pending",
                "priority": "alta",
                "summary": summary,
                "description": "Raised automatically by inventory monitoring.",
                "episode_id": event.meta.get("episode_id"),
                "sku": sku,
                "quantity": qty,
                "created_at": records.to_millis(self.clock()),
                "created_by": records.AUTOMATION_USER,
            },
        )
        await self._notify("Inventory alert", f"Inventory: {summary}")

    async def _on_followup_scheduled(self, event: DomainEvent) -> None:
        kind = event.meta.get("kind") or FollowUpKind.REVIEW.value
        target = event.meta.get("date")
        try:
            target_ms = int(target)
        except (TypeError, ValueError):
            target_ms = None
        if target_ms is None or not 0 < target_ms <= records.MAX_MILLIS:
            target_ms = records.to_millis(self.clock())

        await self.records.set(
            records.TASKS,
            f"followup-{event.id}",
            {
                "type": "FOLLOW_UP_REMINDER",
                "status": "pending",
                "priority": "media" if kind == FollowUpKind.PROS.value else "alta",
                "summary": f"Remind patient about {kind}",
                "episode_id": event.subject.id,
                "follow_up_id": event.meta.get("follow_up_id"),
                "target_date": target_ms,
                "created_at": records.to_millis(self.clock()),
                "created_by": records.AUTOMATION_USER,
            },
        )
        when = records.from_millis(target_ms).strftime("%Y-%m-%d %H:%M UTC")
        await self._notify("Follow-up reminder", f"New follow-up ({kind}) scheduled for {when}")

    async def _on_episode_state_changed(self, event: DomainEvent) -> None:
        await self.records.set(
            records.KPI_EVENTS,
            event.id,
            {
                "episode_id": event.subject.id,
                "from": event.meta.get("from"),
                "to": event.meta.get("to"),
                "trigger": event.meta.get("trigger"),
                "timestamp": records.to_millis(event.timestamp),
            },
        )
        logger.info(
            f"Episode {event.subject.id} went {event.meta.get('from')} -> "
            f"{event.meta.get('to')} (trigger {event.meta.get('trigger')})"
        )

    async def _on_quote_presented(self, event: DomainEvent) -> None:
        episode_id = event.meta.get("episode_id") or "unknown"
        total = event.meta.get("total")
        total_text = f"€{total}" if total is not None else "N/A"
        await self.records.set(
            records.TASKS,
            f"quote-presented-{event.id}",
            {
                "type": "QUOTE_FOLLOWUP",
                "status": "pending",
                "priority": "media",
                "summary": f"Follow up on quote (episode {episode_id})",
                "description": f"Presented total: {total_text}",
                "episode_id": event.meta.get("episode_id"),
                "quote_id": event.subject.id,
                "created_at": records.to_millis(self.clock()),
                "created_by": records.AUTOMATION_USER,
            },
        )
        await self._notify(
            "Quote presented",
            f"A quote was presented for episode {episode_id}. Estimated total: {total_text}.",
        )

    async def _on_quote_accepted(self, event: DomainEvent) -> None:
        episode_id = event.meta.get("episode_id")
        await self.records.set(
            records.KPI_EVENTS,
            f"quote-{event.id}",
            {
                "episode_id": episode_id,
                "quote_id": event.meta.get("quote_id") or event.subject.id,
                "type": EventType.QUOTE_ACCEPTED.value,
                "timestamp": records.to_millis(event.timestamp),
            },
        )
        await self._notify("Quote accepted", f"Quote accepted (episode {episode_id or 'N/A'})")

    async def _notify(self, subject: str, text: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send(subject, text)
        except Exception as e:
            logger.error(f"Failed to send notification '{subject}': {e}", exc_info=True)

"""Daemon scheduler adapter.

Implements a long-running asyncio loop that feeds new event log entries
to the automation service at a configurable interval and periodically
purges old dedupe marks. The log cursor is saved in the record store so
a restart resumes instead of replaying the whole log.
"""

import asyncio
import logging
import signal
from typing import cast

from careflow.core import records
from careflow.core.models import ProcessResult
from careflow.core.ports import AutomationPort, RecordStorePort

logger = logging.getLogger(__name__)


class AutomationScheduler:
    """Asyncio-based scheduler for periodic automation cycles."""

    def __init__(
        self,
        automation: AutomationPort | None = None,
        interval_seconds: float = 30,
        batch_size: int = 100,
        purge_every_cycles: int = 120,
        retention_days: int = 30,
        start_sequence: int = 0,
        max_retry_cycles: int = 3,
        cursor_store: RecordStorePort | None = None,
    ):
        """Initialize the scheduler.

        Args:
            automation: AutomationPort to drive (can be set later).
            interval_seconds: Pause between cycles in seconds.
            batch_size: Maximum events handled per cycle.
            purge_every_cycles: Purge dedupe marks every this many cycles.
            retention_days: Age after which dedupe marks are purged.
            start_sequence: Log sequence to resume after.
            max_retry_cycles: Cycles a batch with failed events is re-read
                before the cursor moves past it.
            cursor_store: Where the cursor is saved between runs (optional).
        """
        self.automation = automation
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.purge_every_cycles = purge_every_cycles
        self.retention_days = retention_days
        self.cursor = start_sequence
        self.max_retry_cycles = max_retry_cycles
        self._retries = 0
        self.cursor_store = cursor_store
        self.running = False
        self._task: asyncio.Task[None] | None = None
        self._consecutive_failures = 0
        self._last_batch_size = 0

    async def start(self) -> None:
        """Run the loop until stopped.

        Raises:
            ValueError: If automation is not set.
        """
        if self.automation is None:
            raise ValueError("automation must be set before starting the scheduler")

        if self.running:
            logger.warning("Automation scheduler already running")
            return

        await self._load_cursor()
        self.running = True
        logger.info(
            f"Starting automation scheduler with {self.interval_seconds}s interval, "
            f"resuming after sequence {self.cursor}"
        )

        self._setup_signal_handlers()

        self._task = asyncio.current_task()
        try:
            await self._run_loop()
        except asyncio.CancelledError:
            logger.info("Automation scheduler cancelled")
        finally:
            self.running = False
            self._task = None
            logger.info("Automation scheduler stopped")

    async def stop(self) -> None:
        if not self.running:
            return

        logger.info("Stopping automation scheduler...")
        self.running = False

        if self._task and self._task is not asyncio.current_task():
            self._task.cancel()

    def _setup_signal_handlers(self) -> None:
        try:
            loop = asyncio.get_running_loop()

            def _handle_signal(sig: int) -> None:
                logger.info(f"Received signal {sig}, initiating graceful shutdown...")
                asyncio.create_task(self.stop())

            loop.add_signal_handler(signal.SIGTERM, _handle_signal, signal.SIGTERM)
            loop.add_signal_handler(signal.SIGINT, _handle_signal, signal.SIGINT)
        except NotImplementedError:
            # Signal handlers not available on Windows
            logger.debug("Signal handlers not available on this platform")
        except Exception as e:
            logger.warning(f"Failed to set up signal handlers: {e}")

    async def run_cycle(self) -> ProcessResult:
        """Process one batch of pending events and advance the cursor.

        A batch with failed events is re-read on the next cycles so the
        released events are retried; processed ones come back as duplicates.
        """
        automation = cast(AutomationPort, self.automation)
        result = await automation.process_pending(
            after_sequence=self.cursor, limit=self.batch_size
        )
        if result.failed and self._retries < self.max_retry_cycles:
            self._retries += 1
            logger.warning(
                f"{result.failed} events failed, holding cursor at {self.cursor} "
                f"(retry {self._retries}/{self.max_retry_cycles})"
            )
            self._last_batch_size = 0
        else:
            if result.failed:
                logger.error(
                    f"Giving up on {result.failed} failed events before sequence "
                    f"{result.last_sequence}"
                )
            self._retries = 0
            if result.last_sequence > self.cursor:
                self.cursor = result.last_sequence
                await self._save_cursor()
            self._last_batch_size = result.events_seen
        return result

    async def _run_loop(self) -> None:
        automation = cast(AutomationPort, self.automation)
        cycle_number = 0
        loop = asyncio.get_running_loop()

        while self.running:
            cycle_number += 1

            try:
                start_time = loop.time()
                result = await self.run_cycle()
                elapsed = loop.time() - start_time
                self._consecutive_failures = 0

                if result.events_seen:
                    logger.info(
                        f"Automation cycle #{cycle_number} completed in {elapsed:.2f}s: "
                        f"{result.processed} processed, {result.duplicates} duplicates, "
                        f"{result.failed} failed (cursor {self.cursor})"
                    )
                else:
                    logger.debug(f"Automation cycle #{cycle_number}: no new events")

                if self.purge_every_cycles and cycle_number % self.purge_every_cycles == 0:
                    await automation.purge_processed(older_than_days=self.retention_days)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._consecutive_failures += 1
                self._last_batch_size = 0
                logger.error(
                    f"Error in automation cycle #{cycle_number}: {e} "
                    f"(consecutive failures: {self._consecutive_failures})",
                    exc_info=True,
                )
                if self._consecutive_failures >= 5:
                    logger.critical(
                        f"Automation has failed {self._consecutive_failures} consecutive "
                        "cycles. Manual intervention may be required."
                    )

            # A full batch means more events are waiting; skip the pause
            if self.running and self._last_batch_size < self.batch_size:
                await asyncio.sleep(self.interval_seconds)

    async def _load_cursor(self) -> None:
        if self.cursor_store is None:
            return
        saved = await self.cursor_store.get(records.AUTOMATION_STATE, records.SCHEDULER_CURSOR_ID)
        if saved and isinstance(saved.get("sequence"), int) and saved["sequence"] > self.cursor:
            self.cursor = saved["sequence"]

    async def _save_cursor(self) -> None:
        if self.cursor_store is None:
            return
        await self.cursor_store.set(
            records.AUTOMATION_STATE,
            records.SCHEDULER_CURSOR_ID,
            {"sequence": self.cursor},
        )

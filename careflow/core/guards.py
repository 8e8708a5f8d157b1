"""Resolve guard facts for an episode from stored records."""

import logging

from . import records
from .models import ConsentType, GuardContext, QuoteStatus
from .ports import RecordStorePort

logger = logging.getLogger(__name__)


class GuardContextResolver:
    """Derives the facts the records can prove and merges caller assertions.

    Consents and quote status come from the record store. Clinical
    judgements (exploration done, treatment controlled, discharge ready,
    recall scheduled) have no record of their own and must be asserted.
    """

    def __init__(self, records_store: RecordStorePort):
        self.records = records_store

    async def resolve(
        self, episode_id: str, asserted: GuardContext | None = None
    ) -> GuardContext:
        base = await self._has_consent(episode_id, ConsentType.BASE)
        specific = await self._has_consent(episode_id, ConsentType.SPECIFIC)
        quote_status = await self._latest_quote_status(episode_id)

        derived = GuardContext(
            has_base_consent=base,
            has_specific_consent=specific,
            quote_status=quote_status,
        )
        context = derived.merge(asserted)
        logger.debug(
            f"Resolved guard context for episode {episode_id}: {context}",
            extra={"episode_id": episode_id},
        )
        return context

    async def _has_consent(self, episode_id: str, consent_type: ConsentType) -> bool:
        found = await self.records.find(
            records.CONSENTS,
            {"episode_id": episode_id, "type": consent_type.value},
            limit=1,
        )
        return bool(found)

    async def _latest_quote_status(self, episode_id: str) -> QuoteStatus | None:
        quotes = await self.records.find(
            records.QUOTES,
            {"episode_id": episode_id},
            limit=1,
            order_by="updated_at",
            descending=True,
        )
        if not quotes:
            return None
        status = quotes[0].get("status")
        try:
            return QuoteStatus(status)
        except ValueError:
            logger.warning(f"Quote {quotes[0].get('id')} has unknown status {status!r}")
            return None

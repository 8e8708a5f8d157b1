"""Tests for GuardContextResolver."""

import pytest

from careflow.core import records
from careflow.core.guards import GuardContextResolver
from careflow.core.models import GuardContext, QuoteStatus
from careflow.tests.fakes import FakeRecordStore


@pytest.fixture
def record_store() -> FakeRecordStore:
    return FakeRecordStore()


@pytest.fixture
def resolver(record_store: FakeRecordStore) -> GuardContextResolver:
    return GuardContextResolver(record_store)


@pytest.mark.asyncio
async def test_empty_records_give_empty_context(resolver: GuardContextResolver) -> None:
    assert await resolver.resolve("ep-1") == GuardContext()


@pytest.mark.asyncio
async def test_consents_are_scoped_to_episode(
    resolver: GuardContextResolver, record_store: FakeRecordStore
) -> None:
    await record_store.add(records.CONSENTS, {"episode_id": "ep-1", "type": "BASE"})
    await record_store.add(records.CONSENTS, {"episode_id": "ep-2", "type": "SPECIFIC"})

    context = await resolver.resolve("ep-1")

    assert context.has_base_consent
    assert not context.has_specific_consent


@pytest.mark.asyncio
async def test_latest_quote_wins(
    resolver: GuardContextResolver, record_store: FakeRecordStore
) -> None:
    await record_store.set(
        records.QUOTES, "q-old", {"episode_id": "ep-1", "status": "ACCEPTED", "updated_at": 1000}
    )
    await record_store.set(
        records.QUOTES, "q-new", {"episode_id": "ep-1", "status": "PRESENTED", "updated_at": 2000}
    )

    context = await resolver.resolve("ep-1")

    assert context.quote_status is QuoteStatus.PRESENTED


@pytest.mark.asyncio
async def test_unknown_quote_status_is_ignored(
    resolver: GuardContextResolver, record_store: FakeRecordStore
) -> None:
    await record_store.set(
        records.QUOTES, "q-1", {"episode_id": "ep-1", "status": "LOST", "updated_at": 1}
    )

    assert (await resolver.resolve("ep-1")).quote_status is None


@pytest.mark.asyncio
async def test_asserted_facts_are_merged(
    resolver: GuardContextResolver, record_store: FakeRecordStore
) -> None:
    await record_store.add(records.CONSENTS, {"episode_id": "ep-1", "type": "SPECIFIC"})

    context = await resolver.resolve(
        "ep-1", GuardContext(treatment_controlled=True, quote_status=QuoteStatus.ACCEPTED)
    )

    assert context.has_specific_consent
    assert context.treatment_controlled
    assert context.quote_status is QuoteStatus.ACCEPTED
    assert not context.has_base_consent

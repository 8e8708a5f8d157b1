"""Integration tests for the SQLite store adapters."""

import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiosqlite
import pytest

from careflow.adapters.store.sqlite import SQLiteDocumentStore
from careflow.core.exceptions import EpisodeNotFound
from careflow.core.models import DomainEvent, Episode, EpisodeState, EventSubject, SubjectKind

T0 = datetime(2024, 6, 3, 9, 0, tzinfo=UTC)


def make_episode(
    episode_id: str = "ep-1",
    state: EpisodeState = EpisodeState.CAPTURE,
    updated_at: datetime = T0,
) -> Episode:
    return Episode(
        id=episode_id,
        patient_id="pat-1",
        state=state,
        started_at=T0,
        updated_at=updated_at,
        tags=("dolor-lumbar",),
    )


def make_event(subject_id: str = "ep-1", at: datetime = T0, **meta) -> DomainEvent:
    return DomainEvent(
        id=str(uuid.uuid4()),
        type="Episode.StateChanged",
        subject=EventSubject(SubjectKind.EPISODE, subject_id),
        timestamp=at,
        actor_user_id="u-1",
        meta=meta,
    )


@pytest.fixture
async def db(tmp_path: Path) -> SQLiteDocumentStore:
    """Create a document store on a temporary database file."""
    store = SQLiteDocumentStore(str(tmp_path / "data" / "careflow.db"))
    await store.init_schema()
    yield store
    await store.close_pool()


# ============================================================================
# Episodes
# ============================================================================


@pytest.mark.asyncio
async def test_create_and_get_episode(db: SQLiteDocumentStore) -> None:
    await db.episodes.create(make_episode())

    episode = await db.episodes.get("ep-1")

    assert episode is not None
    assert episode.state is EpisodeState.CAPTURE
    assert episode.tags == ("dolor-lumbar",)
    assert episode.started_at == T0
    assert episode.closed_at is None
    assert await db.episodes.get("missing") is None


@pytest.mark.asyncio
async def test_list_orders_by_recent_update(db: SQLiteDocumentStore) -> None:
    for i, state in enumerate([EpisodeState.CAPTURE, EpisodeState.TRIAGE, EpisodeState.CAPTURE]):
        await db.episodes.create(
            make_episode(f"ep-{i}", state, updated_at=T0 + timedelta(minutes=i))
        )

    assert [e.id for e in await db.episodes.list()] == ["ep-2", "ep-1", "ep-0"]
    assert [e.id for e in await db.episodes.list(EpisodeState.CAPTURE, limit=1)] == ["ep-2"]


@pytest.mark.asyncio
async def test_get_many_keeps_requested_order(db: SQLiteDocumentStore) -> None:
    await db.episodes.create(make_episode("ep-a"))
    await db.episodes.create(make_episode("ep-b"))

    episodes = await db.episodes.get_many(["ep-b", "nope", "ep-a", "ep-b"])

    assert [e.id for e in episodes] == ["ep-b", "ep-a"]
    assert await db.episodes.get_many([]) == []


@pytest.mark.asyncio
async def test_update_fields(db: SQLiteDocumentStore) -> None:
    await db.episodes.create(make_episode())
    later = T0 + timedelta(hours=1)

    updated = await db.episodes.update_fields(
        "ep-1", {"risk_flags": ("anticoagulado",), "closed_at": later}, later
    )

    assert updated.risk_flags == ("anticoagulado",)
    assert updated.closed_at == later
    assert updated.updated_at == later
    assert updated.state is EpisodeState.CAPTURE


@pytest.mark.asyncio
async def test_update_fields_rejects_state_and_unknown_episode(db: SQLiteDocumentStore) -> None:
    await db.episodes.create(make_episode())

    with pytest.raises(ValueError, match="state"):
        await db.episodes.update_fields("ep-1", {"state": EpisodeState.TRIAGE}, T0)
    with pytest.raises(EpisodeNotFound):
        await db.episodes.update_fields("missing", {"reason": "x"}, T0)


@pytest.mark.asyncio
async def test_count_by_state(db: SQLiteDocumentStore) -> None:
    await db.episodes.create(make_episode("ep-1", EpisodeState.TRIAGE))
    await db.episodes.create(make_episode("ep-2", EpisodeState.TRIAGE))
    await db.episodes.create(make_episode("ep-3", EpisodeState.BUDGET))

    assert await db.episodes.count_by_state() == {
        EpisodeState.TRIAGE: 2,
        EpisodeState.BUDGET: 1,
    }


# ============================================================================
# Transitions
# ============================================================================


@pytest.mark.asyncio
async def test_commit_transition_updates_state_and_logs(db: SQLiteDocumentStore) -> None:
    await db.episodes.create(make_episode())
    at = T0 + timedelta(minutes=5)

    stored = await db.episodes.commit_transition(
        "ep-1",
        EpisodeState.CAPTURE,
        EpisodeState.TRIAGE,
        at,
        make_event(at=at, **{"from": "CAPTURE", "to": "TRIAGE"}),
    )

    assert stored is not None
    assert stored.sequence == 1
    episode = await db.episodes.get("ep-1")
    assert episode is not None
    assert episode.state is EpisodeState.TRIAGE
    assert episode.updated_at == at
    (logged,) = await db.events.list_for_subject("ep-1")
    assert logged.meta["to"] == "TRIAGE"


@pytest.mark.asyncio
async def test_commit_transition_stale_state(db: SQLiteDocumentStore) -> None:
    await db.episodes.create(make_episode(state=EpisodeState.TRIAGE))

    stored = await db.episodes.commit_transition(
        "ep-1", EpisodeState.CAPTURE, EpisodeState.TRIAGE, T0, make_event()
    )

    assert stored is None
    assert await db.events.list_since(0) == []
    # The connection must be usable after the rolled back transaction
    assert (await db.episodes.get("ep-1")).state is EpisodeState.TRIAGE


@pytest.mark.asyncio
async def test_commit_transition_unknown_episode(db: SQLiteDocumentStore) -> None:
    with pytest.raises(EpisodeNotFound):
        await db.episodes.commit_transition(
            "missing", EpisodeState.CAPTURE, EpisodeState.TRIAGE, T0, make_event("missing")
        )


# ============================================================================
# Event log
# ============================================================================


@pytest.mark.asyncio
async def test_event_log_sequences_and_queries(db: SQLiteDocumentStore) -> None:
    first = await db.events.append(make_event(at=T0 + timedelta(minutes=2), n=1))
    second = await db.events.append(make_event(at=T0, n=2))
    await db.events.append(make_event("ep-2", n=3))

    assert (first.sequence, second.sequence) == (1, 2)

    timeline = await db.events.list_for_subject("ep-1")
    assert [e.meta["n"] for e in timeline] == [2, 1]

    since = await db.events.list_since(1, limit=5)
    assert [e.sequence for e in since] == [2, 3]

    fetched = await db.events.get(first.id)
    assert fetched is not None
    assert fetched.subject == EventSubject(SubjectKind.EPISODE, "ep-1")
    assert fetched.timestamp == T0 + timedelta(minutes=2)


@pytest.mark.asyncio
async def test_duplicate_event_id_rejected(db: SQLiteDocumentStore) -> None:
    event = make_event()
    await db.events.append(event)

    with pytest.raises(aiosqlite.IntegrityError):
        await db.events.append(event)


@pytest.mark.asyncio
async def test_event_log_accepts_custom_types(db: SQLiteDocumentStore) -> None:
    custom = DomainEvent(
        id=str(uuid.uuid4()),
        type="Custom.Thing",
        subject=EventSubject(SubjectKind.PATIENT, "pat-1"),
        timestamp=T0,
        meta={"source": "import"},
    )

    stored = await db.events.append(custom)
    fetched = await db.events.get(custom.id)

    assert stored.sequence == 1
    assert fetched is not None
    assert fetched.type == "Custom.Thing"
    assert fetched.subject == EventSubject(SubjectKind.PATIENT, "pat-1")
    assert fetched.actor_user_id is None
    assert dict(fetched.meta) == {"source": "import"}
    assert [e.type for e in await db.events.list_since(0)] == ["Custom.Thing"]


# ============================================================================
# Records
# ============================================================================


@pytest.mark.asyncio
async def test_record_set_get_and_merge(db: SQLiteDocumentStore) -> None:
    record_id = await db.records.add("quotes", {"status": "PRESENTED", "total": 80.0})

    await db.records.set("quotes", record_id, {"status": "ACCEPTED"}, merge=True)
    merged = await db.records.get("quotes", record_id)
    assert merged == {"id": record_id, "status": "ACCEPTED", "total": 80.0}

    await db.records.set("quotes", record_id, {"status": "DECLINED"})
    assert await db.records.get("quotes", record_id) == {"id": record_id, "status": "DECLINED"}
    assert await db.records.get("other", record_id) is None


@pytest.mark.asyncio
async def test_record_find_filters_and_orders(db: SQLiteDocumentStore) -> None:
    await db.records.set("consents", "c-1", {"episode_id": "ep-1", "type": "BASE", "signed_at": 3})
    await db.records.set(
        "consents", "c-2", {"episode_id": "ep-1", "type": "SPECIFIC", "signed_at": 1}
    )
    await db.records.set("consents", "c-3", {"episode_id": "ep-2", "type": "BASE", "signed_at": 2})

    found = await db.records.find("consents", {"episode_id": "ep-1"}, order_by="signed_at")
    assert [r["id"] for r in found] == ["c-2", "c-1"]

    latest = await db.records.find("consents", order_by="signed_at", descending=True, limit=1)
    assert [r["id"] for r in latest] == ["c-1"]

    with pytest.raises(ValueError, match="Invalid record field"):
        await db.records.find("consents", {"type') OR 1=1 --": "x"})


@pytest.mark.asyncio
async def test_record_delete_and_delete_older_than(db: SQLiteDocumentStore) -> None:
    for i in range(4):
        await db.records.set("automation-processed", f"ev-{i}", {"processed_at": i * 100})

    assert await db.records.delete("automation-processed", "ev-3") is True
    assert await db.records.delete("automation-processed", "ev-3") is False

    deleted = await db.records.delete_older_than("automation-processed", "processed_at", 150, 10)
    assert deleted == 2
    remaining = await db.records.find("automation-processed")
    assert [r["id"] for r in remaining] == ["ev-2"]


@pytest.mark.asyncio
async def test_delete_older_than_respects_limit(db: SQLiteDocumentStore) -> None:
    for i in range(5):
        await db.records.set("automation-processed", f"ev-{i}", {"processed_at": 1})

    assert await db.records.delete_older_than("automation-processed", "processed_at", 10, 2) == 2
    assert len(await db.records.find("automation-processed")) == 3

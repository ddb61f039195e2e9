from __future__ import annotations

import pytest
from sqlmodel import select

from agent_inbox.bridge import CompatibilityBridge, LegacyMessageStore
from agent_inbox.db import get_session
from agent_inbox.errors import NotFoundError, ValidationError
from agent_inbox.models import LegacyDirectMessage, Notification
from agent_inbox.store import UnifiedMessageStore

_TRACK_FIELDS = {"id", "generation", "created_ts"}


def _comparable(items: list[dict]) -> list[dict]:
    return [{k: v for k, v in item.items() if k not in _TRACK_FIELDS} for item in items]


@pytest.fixture
def bridge(service):
    return CompatibilityBridge(service)


@pytest.mark.asyncio
async def test_legacy_comment_fans_out_with_legacy_reference(bridge, activity_log):
    result = await bridge.legacy_post_comment("AGT-9", "Max", "@sam @son review please")
    assert result["mentions"] == ["sam", "son"]
    assert result["ticket_ref"] == 1

    async with get_session() as session:
        notes = list((await session.execute(select(Notification).order_by(Notification.id))).scalars().all())
    assert [n.recipient for n in notes] == ["sam", "son"]
    assert all(n.legacy_comment_id == result["message_id"] and n.message_id is None for n in notes)
    assert activity_log.events[0].source == "legacy_messaging"
    assert activity_log.events[0].title == "MAX commented on AGT-9"


@pytest.mark.asyncio
async def test_legacy_dm_stored_unread_with_status(bridge):
    result = await bridge.legacy_send_dm("max", "sam", "old school", priority="urgent")
    assert result["priority"] == "urgent"
    async with get_session() as session:
        dm = await session.get(LegacyDirectMessage, result["message_id"])
    assert dm is not None
    assert dm.status == "unread"
    assert dm.kind == "fyi"

    (view,) = await bridge.legacy_get_dms("Sam")
    assert view["generation"] == "legacy"
    assert view["read"] is False
    assert view["sender"] == "max"
    assert view["sender_name"] == "Max"


@pytest.mark.asyncio
async def test_tracks_never_merge(bridge, service):
    await bridge.legacy_post_comment("AGT-9", "max", "legacy comment")
    await bridge.legacy_send_dm("max", "sam", "legacy dm")
    await service.post_comment("AGT-9", "max", "unified comment")
    await service.send_dm("max", "sam", "unified dm")

    assert [c["body"] for c in await service.get_comments("AGT-9")] == ["unified comment"]
    assert [c["body"] for c in await bridge.legacy_get_comments("AGT-9")] == ["legacy comment"]
    assert [m["body"] for m in await service.get_dms("sam")] == ["unified dm"]
    assert [m["body"] for m in await bridge.legacy_get_dms("sam")] == ["legacy dm"]
    # Unified unread aggregation only counts the unified track.
    assert (await service.get_unread_count("sam"))["dms"] == 1


@pytest.mark.asyncio
async def test_read_model_parity(bridge, service):
    script = [("max", "sam", "one"), ("sam", "max", "two"), ("max", "sam", "three"), ("leo", "sam", "other")]
    for sender, recipient, body in script:
        await bridge.legacy_send_dm(sender, recipient, body, ticket_ref="AGT-9")
        await service.send_dm(sender, recipient, body, ticket_ref="AGT-9")
    for body in ("c1", "c2 @leo"):
        await bridge.legacy_post_comment("AGT-9", "max", body)
        await service.post_comment("AGT-9", "max", body)

    assert _comparable(await bridge.legacy_get_comments("AGT-9")) == _comparable(await service.get_comments("AGT-9"))
    assert _comparable(await bridge.legacy_get_dms("sam")) == _comparable(await service.get_dms("sam"))
    assert _comparable(await bridge.legacy_get_conversation("max", "sam")) == _comparable(
        await service.get_conversation("max", "sam")
    )
    assert _comparable(await bridge.legacy_get_conversation("sam", "max", limit=2)) == _comparable(
        await service.get_conversation("sam", "max", limit=2)
    )


@pytest.mark.asyncio
async def test_both_stores_answer_the_read_model(seeded):
    ticket = seeded["ticket"]
    for store in (UnifiedMessageStore(), LegacyMessageStore()):
        assert await store.comments_for_ticket(ticket.id) == []
        assert await store.dms_for("sam") == []
        assert await store.conversation("max", "sam", limit=5) == []


@pytest.mark.asyncio
async def test_unknown_agents_read_as_empty(bridge):
    assert await bridge.legacy_get_dms("ghost") == []
    assert await bridge.legacy_get_conversation("ghost", "sam") == []
    with pytest.raises(NotFoundError):
        await bridge.legacy_mark_all_read("ghost")
    with pytest.raises(NotFoundError):
        await bridge.legacy_send_dm("max", "ghost", "hi")


@pytest.mark.asyncio
async def test_legacy_validation(bridge):
    with pytest.raises(ValidationError):
        await bridge.legacy_post_comment("AGT-9", "max", "")
    with pytest.raises(ValidationError):
        await bridge.legacy_send_dm("max", "sam", "hi", priority="loud")
    with pytest.raises(NotFoundError):
        await bridge.legacy_post_comment("AGT-404", "max", "hi")


@pytest.mark.asyncio
async def test_legacy_mark_read_and_mark_all_read(bridge):
    first = await bridge.legacy_send_dm("max", "sam", "a")
    await bridge.legacy_send_dm("leo", "sam", "b")
    await bridge.legacy_send_dm("sam", "max", "not for sam")

    assert await bridge.legacy_mark_read(first["message_id"]) == {"success": True}
    assert await bridge.legacy_mark_read(first["message_id"]) == {"success": True}
    async with get_session() as session:
        note = (
            await session.execute(select(Notification).where(Notification.legacy_message_id == first["message_id"]))
        ).scalars().one()
    assert note.read is True

    assert [m["body"] for m in await bridge.legacy_get_dms("sam", unread_only=True)] == ["b"]
    assert await bridge.legacy_mark_all_read("SAM") == {"marked": 1}
    assert await bridge.legacy_get_dms("sam", unread_only=True) == []
    assert len(await bridge.legacy_get_dms("max", unread_only=True)) == 1

    with pytest.raises(NotFoundError):
        await bridge.legacy_mark_read(9999)


@pytest.mark.asyncio
async def test_legacy_mark_all_read_clears_legacy_comment_mentions(bridge, service):
    await bridge.legacy_post_comment("AGT-9", "max", "@sam look")
    await bridge.legacy_send_dm("leo", "sam", "ping")
    await bridge.legacy_post_comment("AGT-9", "max", "@leo only")
    assert await service.notifications.unread_count("sam") == 2

    assert await bridge.legacy_mark_all_read("sam") == {"marked": 2}
    assert await service.notifications.unread_count("sam") == 0
    assert await service.notifications.unread_count("leo") == 1
    assert await bridge.legacy_mark_all_read("sam") == {"marked": 0}


@pytest.mark.asyncio
async def test_marking_legacy_dm_notification_reads_the_dm(bridge, service):
    sent = await bridge.legacy_send_dm("max", "sam", "hi")
    async with get_session() as session:
        note = (
            await session.execute(select(Notification).where(Notification.legacy_message_id == sent["message_id"]))
        ).scalars().one()

    assert await service.mark_read(note.id, kind="notification") == {"success": True}
    async with get_session() as session:
        dm = await session.get(LegacyDirectMessage, sent["message_id"])
    assert dm is not None
    assert dm.status == "read"
    assert await bridge.legacy_get_dms("sam", unread_only=True) == []

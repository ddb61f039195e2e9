from __future__ import annotations

import json

import pytest
from fastmcp import Client
from fastmcp.exceptions import ToolError

from agent_inbox.app import TOOL_METRICS, build_mcp_server


@pytest.mark.asyncio
async def test_tools_are_registered(seeded):
    server = build_mcp_server()
    async with Client(server) as client:
        names = {tool.name for tool in await client.list_tools()}
    expected = {
        "health_check",
        "post_comment",
        "send_dm",
        "get_comments",
        "get_dms",
        "get_unread",
        "get_unread_count",
        "mark_read",
        "mark_all_read",
        "get_conversation",
        "list_recent",
        "list_notifications",
        "clear_read_notifications",
        "clear_all_notifications",
        "cleanup_notifications",
        "notifications_dashboard",
        "legacy_post_comment",
        "legacy_send_dm",
        "legacy_get_comments",
        "legacy_get_dms",
        "legacy_get_conversation",
        "legacy_mark_read",
        "legacy_mark_all_read",
    }
    assert expected <= names


@pytest.mark.asyncio
async def test_comment_and_unread_flow(seeded):
    server = build_mcp_server()
    async with Client(server) as client:
        posted = await client.call_tool(
            "post_comment", {"ticket_ref": "AGT-9", "sender_name": "sam", "body": "Looks good @Leo @leo @all"}
        )
        assert posted.data["mentions"] == ["leo", "max", "sam", "son"]

        counts = await client.call_tool("get_unread_count", {"agent_name": "leo"})
        assert counts.data == {"dms": 0, "mentions": 1, "total": 1}

        comments = await client.call_tool("get_comments", {"ticket_ref": "AGT-9"})
        assert comments.data["comments"][0]["sender_name"] == "Sam"

        await client.call_tool(
            "mark_read", {"item_id": posted.data["message_id"], "kind": "message", "agent_name": "leo"}
        )
        counts = await client.call_tool("get_unread_count", {"agent_name": "leo"})
        assert counts.data["total"] == 0

        listed = await client.call_tool("list_notifications", {"agent_name": "max", "unread_only": True})
        assert listed.data["unread_count"] == 1
        assert listed.data["notifications"][0]["sender_name"] == "Sam"


@pytest.mark.asyncio
async def test_dm_flow(seeded):
    server = build_mcp_server()
    async with Client(server) as client:
        sent = await client.call_tool(
            "send_dm", {"sender": "max", "recipient": "sam", "body": "hi", "priority": "urgent"}
        )
        assert sent.data["priority"] == "urgent"
        await client.call_tool("send_dm", {"sender": "sam", "recipient": "max", "body": "hello"})

        dms = await client.call_tool("get_dms", {"agent_name": "sam", "unread_only": True})
        assert [m["body"] for m in dms.data["messages"]] == ["hi"]

        convo = await client.call_tool("get_conversation", {"agent_a": "max", "agent_b": "sam", "limit": 1})
        assert [m["body"] for m in convo.data["messages"]] == ["hello"]

        unread = await client.call_tool("get_unread", {"agent_name": "sam"})
        assert unread.data["count"]["dms"] == 1

        marked = await client.call_tool("mark_all_read", {"agent_name": "sam"})
        assert marked.data == {"marked": 1}

        recent = await client.call_tool("list_recent", {})
        assert len(recent.data["messages"]) == 2


@pytest.mark.asyncio
async def test_errors_map_to_tool_errors(seeded):
    server = build_mcp_server()
    async with Client(server) as client:
        with pytest.raises(ToolError) as not_found:
            await client.call_tool("post_comment", {"ticket_ref": "NOPE-1", "sender_name": "max", "body": "x"})
        assert "NOT_FOUND" in str(not_found.value)

        with pytest.raises(ToolError) as invalid:
            await client.call_tool("send_dm", {"sender": "max", "recipient": "sam", "body": "x", "priority": "meh"})
        assert "INVALID_ARGUMENT" in str(invalid.value)

        with pytest.raises(ToolError) as negative:
            await client.call_tool("cleanup_notifications", {"hours_old": -1})
        assert "INVALID_ARGUMENT" in str(negative.value)

    assert TOOL_METRICS["post_comment"]["errors"] >= 1


@pytest.mark.asyncio
async def test_legacy_tools(seeded):
    server = build_mcp_server()
    async with Client(server) as client:
        sent = await client.call_tool("legacy_send_dm", {"sender": "max", "recipient": "sam", "body": "old"})
        dms = await client.call_tool("legacy_get_dms", {"agent_name": "sam"})
        assert dms.data["messages"][0]["generation"] == "legacy"
        await client.call_tool("legacy_mark_read", {"message_id": sent.data["message_id"]})
        marked = await client.call_tool("legacy_mark_all_read", {"agent_name": "sam"})
        assert marked.data == {"marked": 0}

        with pytest.raises(ToolError) as missing:
            await client.call_tool("legacy_mark_all_read", {"agent_name": "ghost"})
        assert "NOT_FOUND" in str(missing.value)


@pytest.mark.asyncio
async def test_notification_maintenance_tools(seeded):
    server = build_mcp_server()
    async with Client(server) as client:
        await client.call_tool("post_comment", {"ticket_ref": 1, "sender_name": "max", "body": "@sam @leo"})
        board = await client.call_tool("notifications_dashboard", {})
        assert board.data["total_unread"] == 2

        cleared = await client.call_tool("clear_all_notifications", {"agent_name": "sam"})
        assert cleared.data == {"deleted": 1}

        result = await client.call_tool("clear_read_notifications", {"agent_name": "leo", "older_than_days": 0})
        assert result.data == {"deleted": 0}

        cleanup = await client.call_tool("cleanup_notifications", {"hours_old": 0})
        assert cleanup.data["remaining"] == 0


@pytest.mark.asyncio
async def test_health_check_and_metrics_resource(seeded):
    server = build_mcp_server()
    async with Client(server) as client:
        health = await client.call_tool("health_check", {})
        assert health.data["status"] == "ok"
        assert health.data["environment"] == "test"

        blocks = await client.read_resource("resource://tooling/metrics")
        payload = json.loads(blocks[0].text)
        names = {entry["name"] for entry in payload["tools"]}
        assert "health_check" in names

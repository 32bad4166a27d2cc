from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from fakes import FakeRest, member
from server.recipients import RecipientResolver
from server.stats import ActivityTracker, build_server_stats, snowflake_time, user_info, weekday_histogram

NOW = datetime(2025, 6, 11, 12, 0, tzinfo=timezone.utc)  # Wednesday


def test_weekday_histogram_counts_last_seven_days() -> None:
    stamps = [
        NOW - timedelta(days=1),  # Tue
        NOW - timedelta(days=2),  # Mon
        NOW - timedelta(days=2, hours=1),  # Mon
        NOW - timedelta(days=30),
    ]
    assert weekday_histogram(stamps, NOW) == [2, 1, 0, 0, 0, 0, 0]


def test_tracker_counts_and_top_users() -> None:
    t = ActivityTracker()
    t.record_message("g1", "1", "c1")
    t.record_message("g1", "1", "c1")
    t.record_message("g1", "2", "c2")
    t.record_reaction("g1", "2")
    t.record_reaction("g1", "2", added=False)
    t.record_reaction("g1", "2", added=False)

    assert t.top_users("g1", "messages") == [("1", 2), ("2", 1)]
    assert t.top_users("g1", "reactions") == []
    assert t.user("g1", "2").reactions == 0
    assert t.channel_messages("g1", "c1") == 2
    assert t.user("g9", "1").messages == 0


def test_build_server_stats() -> None:
    rest = FakeRest(
        {
            "g1": [
                member(1, joined_at="2025-06-10T08:00:00+00:00"),
                member(2, joined_at="2025-06-09T08:00:00Z"),
                member(3, joined_at="2024-01-01T00:00:00+00:00"),
                member(4, bot=True, joined_at="2024-01-01T00:00:00+00:00"),
            ]
        }
    )
    tracker = ActivityTracker()
    tracker.record_message("g1", "1", "c1")
    tracker.record_message("g1", "1", "c1")
    tracker.record_leave("g1", NOW - timedelta(days=1))

    stats = asyncio.run(
        build_server_stats(rest, RecipientResolver(rest, page_delay=0), tracker, "g1", now=NOW)
    )

    info = stats["serverInfo"]
    assert (info["memberCount"], info["humanCount"], info["botCount"]) == (4, 3, 1)
    assert info["channelCount"] == 2
    assert info["roleCount"] == 1
    assert info["boostLevel"] == 1
    assert stats["memberActivity"]["joins"] == [1, 1, 0, 0, 0, 0, 0]
    assert stats["memberActivity"]["leaves"] == [0, 1, 0, 0, 0, 0, 0]
    assert stats["channelActivity"] == {"labels": ["#general"], "data": [2]}
    assert stats["topUsers"]["messages"][0]["name"] == "user1"
    assert stats["topUsers"]["messages"][0]["messages"] == 2
    assert stats["serverGrowth"] == {
        "currentMembers": 4,
        "recentJoins": 2,
        "recentLeaves": 1,
        "growthRate": 50.0,
    }
    assert stats["serverHealth"] == {"activity": 100, "engagement": 5}


def test_build_server_stats_tolerates_missing_extras() -> None:
    class NoChannels(FakeRest):
        async def list_channels(self, guild_id):
            raise RuntimeError("Missing Access")

    rest = NoChannels({"g1": [member(1)]})
    stats = asyncio.run(
        build_server_stats(rest, RecipientResolver(rest, page_delay=0), ActivityTracker(), "g1", now=NOW)
    )
    assert stats["serverInfo"]["channelCount"] == 0
    assert stats["channelActivity"] == {"labels": [], "data": []}


def test_snowflake_time() -> None:
    assert snowflake_time("175928847299117063") == datetime(
        2016, 4, 30, 11, 18, 25, 796000, tzinfo=timezone.utc
    )
    assert snowflake_time("nope") is None


def test_user_info_merges_member_and_activity() -> None:
    rest = FakeRest({"g1": [member(1, joined_at="2025-01-01T00:00:00+00:00")]})
    rest.users["1"] = {"id": "1", "username": "user1", "discriminator": "0", "avatar": None}
    tracker = ActivityTracker()
    tracker.record_presence("1", "idle", [])
    tracker.record_message("g1", "1")

    info = asyncio.run(user_info(rest, tracker, "g1", "1"))

    assert info["joinDate"] == "2025-01-01T00:00:00+00:00"
    assert info["status"] == "idle"
    assert info["activity"]["messages"] == 1
    assert info["bot"] is False

from __future__ import annotations

import pytest

from agent_inbox.mentions import parse_mentions

ROSTER = ("max", "sam", "leo", "son")


def test_wildcard_returns_full_roster_regardless_of_other_markers():
    assert parse_mentions("Looks good @Leo @leo @all", roster=ROSTER, wildcard="all") == frozenset(ROSTER)
    assert parse_mentions("@ALL please read", roster=ROSTER, wildcard="all") == frozenset(ROSTER)


def test_duplicates_collapse_and_case_is_normalized():
    result = parse_mentions("@Sam and @SAM and @sam, also @Leo.", roster=ROSTER, wildcard="all")
    assert result == frozenset({"sam", "leo"})


def test_unknown_names_are_ignored():
    assert parse_mentions("ping @bob and @alice", roster=ROSTER, wildcard="all") == frozenset()


def test_marker_must_end_at_word_boundary():
    assert parse_mentions("hi @samuel and @sonny", roster=ROSTER, wildcard="all") == frozenset()
    assert parse_mentions("hi @sam_2", roster=ROSTER, wildcard="all") == frozenset()
    assert parse_mentions("(@max)", roster=ROSTER, wildcard="all") == frozenset({"max"})


def test_overlapping_roster_names_prefer_longest():
    roster = ("son", "sonja")
    assert parse_mentions("@sonja and @son", roster=roster, wildcard="all") == frozenset({"son", "sonja"})


@pytest.mark.parametrize("text", ["", "no markers here", "email me at max@example.com"])
def test_text_without_markers(text):
    assert parse_mentions(text, roster=ROSTER, wildcard="all") == frozenset()


def test_custom_wildcard():
    assert parse_mentions("@team ship it", roster=ROSTER, wildcard="team") == frozenset(ROSTER)
    assert parse_mentions("@all ship it", roster=ROSTER, wildcard="team") == frozenset()


def test_defaults_come_from_settings(isolated_env, monkeypatch):
    from agent_inbox.config import clear_settings_cache

    monkeypatch.setenv("MENTION_ROSTER", "ada,grace")
    monkeypatch.setenv("MENTION_WILDCARD", "everyone")
    clear_settings_cache()
    assert parse_mentions("@Ada hi") == frozenset({"ada"})
    assert parse_mentions("@everyone hi") == frozenset({"ada", "grace"})

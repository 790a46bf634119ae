"""Tests for agent id generation and alias extraction."""

import re

from app.agent.core.identity import extract_alias, generate_agent_id


def test_generate_without_alias():
    """Test that a bare id is four lowercase alphanumerics."""
    for _ in range(20):
        assert re.fullmatch(r"[a-z0-9]{4}", generate_agent_id())


def test_generate_with_alias():
    """Test that the alias prefixes the random part."""
    agent_id = generate_agent_id("seoul")
    assert re.fullmatch(r"seoul_[a-z0-9]{4}", agent_id)

    # Blank aliases fall back to a bare id
    assert re.fullmatch(r"[a-z0-9]{4}", generate_agent_id("   "))


def test_extract_alias():
    """Test alias extraction from explicitly chosen ids."""
    assert extract_alias("alias_xy12") == "alias"
    assert extract_alias("abc1") is None

    # Second part must be exactly four characters
    assert extract_alias("alias_xy123") is None
    # Exactly two parts
    assert extract_alias("my_alias_xy12") is None
    assert extract_alias("_xy12") is None

"""
Agent identity helpers.

An agent id is either ``<random4>`` or ``<alias>_<random4>`` where the
random part is four characters from ``[a-z0-9]``.
"""

import random
import string
from typing import Optional

ID_ALPHABET = string.ascii_lowercase + string.digits
ID_SUFFIX_LENGTH = 4

AGENT_ID_KEY = "agentId"
AGENT_ALIAS_KEY = "agentAlias"


def random_suffix(length: int = ID_SUFFIX_LENGTH) -> str:
    return "".join(random.choice(ID_ALPHABET) for _ in range(length))


def generate_agent_id(alias: Optional[str] = None) -> str:
    """Generate a new agent id, prefixed with the alias when one is given"""
    suffix = random_suffix()
    alias = (alias or "").strip()
    return f"{alias}_{suffix}" if alias else suffix


def extract_alias(agent_id: str) -> Optional[str]:
    """
    Alias part of an explicitly chosen id.

    Only ids made of exactly two ``_``-separated parts whose second part
    is four characters long carry an alias.
    """
    parts = agent_id.split("_")
    if len(parts) == 2 and parts[0] and len(parts[1]) == ID_SUFFIX_LENGTH:
        return parts[0]
    return None

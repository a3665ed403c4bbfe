"""Document id helpers shared by friends and conversations"""
from typing import Optional

VIRTUAL_PREFIX = "virtual:"


def pair_key(a: str, b: str) -> str:
    """Order-independent key for two user ids: ``"<a>__<b>"`` with sorted ids."""
    x, y = sorted([a, b])
    return f"{x}__{y}"


def virtual_id(counterpart_id: str) -> str:
    return f"{VIRTUAL_PREFIX}{counterpart_id}"


def is_virtual(conversation_id: Optional[str]) -> bool:
    return bool(conversation_id) and conversation_id.startswith(VIRTUAL_PREFIX)

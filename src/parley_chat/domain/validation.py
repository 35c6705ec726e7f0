"""Pure validation of persisted conversation entries."""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger()

# Largest integer that survives a round trip through a JSON double.
MAX_SAFE_INTEGER = 2**53 - 1


def parse_conversation_id(raw: Any) -> Optional[int]:
    """Return ``raw`` as a positive safe integer id, or None if it is not one."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, str):
        text = raw.strip()
        if not (text.isascii() and text.isdigit()):
            return None
        value = int(text)
    else:
        return None
    if value <= 0 or value > MAX_SAFE_INTEGER:
        return None
    return value


def is_valid_entry(value: Any) -> bool:
    """A stored conversation must be a mapping with a list of messages."""
    return isinstance(value, Mapping) and isinstance(value.get("messages"), list)


def validate_entries(raw: Mapping[Any, Any]) -> Tuple[Dict[int, Mapping[str, Any]], int]:
    """Split raw persisted entries into ``(valid_by_id, dropped_count)``.

    Keys that do not parse to a positive safe integer and values that are
    not conversation-shaped are dropped. Iteration order is preserved.
    """
    valid: Dict[int, Mapping[str, Any]] = {}
    dropped = 0
    for key, value in raw.items():
        conversation_id = parse_conversation_id(key)
        if conversation_id is None:
            logger.warning("conversation_entry_dropped", key=str(key), reason="invalid_id")
            dropped += 1
            continue
        if not is_valid_entry(value):
            logger.warning("conversation_entry_dropped", key=str(key), reason="invalid_shape")
            dropped += 1
            continue
        if conversation_id in valid:
            logger.warning("conversation_entry_dropped", key=str(key), reason="duplicate_id")
            dropped += 1
            continue
        valid[conversation_id] = value
    return valid, dropped


def next_id_floor(ids: Iterable[int]) -> int:
    """Smallest id that is strictly greater than every id in ``ids``."""
    valid: List[int] = [i for i in ids if parse_conversation_id(i) is not None]
    return max(valid) + 1 if valid else 1

"""Core utility functions shared across modules."""

from __future__ import annotations

import copy
import re
from typing import Any, Dict

_MAC_PATTERN = re.compile(r"^[0-9A-F]{12}$")


def deep_merge(target: Dict[str, Any], updates: Dict[str, Any]) -> None:
    """Recursively merge updates into target dict, modifying target in-place.

    For each key in updates:
    - If both target[key] and updates[key] are dicts, recursively merge them
    - Otherwise, overwrite target[key] with a deep copy of updates[key]

    Examples:
        >>> target = {"collecting": True, "bluetooth": {"adapter_index": 0}}
        >>> deep_merge(target, {"bluetooth": {"adapter_index": 1}})
        >>> target
        {'collecting': True, 'bluetooth': {'adapter_index': 1}}
    """
    for key, value in updates.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            deep_merge(existing, value)
        else:
            target[key] = copy.deepcopy(value)


def normalize_address(address: str) -> str:
    """Return the canonical upper-case, colon separated form of a MAC address.

    Raises:
        ValueError: If the value is not a 48-bit hardware address.
    """
    compact = re.sub(r"[^0-9A-Fa-f]", "", address or "").upper()
    if not _MAC_PATTERN.match(compact):
        raise ValueError(f"Invalid hardware address: {address!r}")
    return ":".join(compact[index : index + 2] for index in range(0, 12, 2))

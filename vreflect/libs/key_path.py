"""Nested field access for records whose layout is set by configuration."""

from typing import Any, Dict, Sequence, Union


def look_up_key(data: Any, keys: Sequence[Union[str, int]], default: Any = None,
                none_is_valid: bool = True) -> Any:
    """
    Look up a key path in nested dicts and lists.

    Dict levels are indexed by key and list levels by integer position. Any
    missing step returns ``default``.

    Args:
        data: The dict or list to look up in
        keys: The list of keys to walk
        default: Value to return if the path doesn't exist
        none_is_valid: Whether a stored None is returned as is or replaced by default

    Returns:
        The value at the key path, or default if it doesn't exist
    """
    current = data
    for key in keys:
        if isinstance(current, list):
            if not isinstance(key, int) or isinstance(key, bool) or key < 0 or key >= len(current):
                return default
            current = current[key]
        elif isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default

    if current is None and not none_is_valid:
        return default

    return current


def set_key(data: Dict[str, Any], keys: Sequence[str], value: Any) -> None:
    """
    Set a key path in nested dicts, creating the intermediate dicts.

    Args:
        data: The dict to set in
        keys: The list of keys to set
        value: The value to set
    """
    if not keys:
        raise ValueError("Cannot set an empty key path")

    current = data
    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]

    current[keys[-1]] = value

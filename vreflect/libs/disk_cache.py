"""Memoize async function results in a JSON file shared across runs."""

import json
import logging
from functools import wraps
from pathlib import Path
from typing import Any, Dict, Union

from vreflect.libs.jsonl_store import load_json, save_json

LOG = logging.getLogger(__name__)

_MEMORY: Dict[str, Dict[str, Any]] = {}


def cache_key(args: tuple, kwargs: Dict[str, Any]) -> str:
    return json.dumps([list(args), kwargs], sort_keys=True, ensure_ascii=False)


def cached(cache_file: Union[str, Path], enabled: bool = True):
    """
    Decorator caching an async function's JSON-serialisable results on disk.

    Results are keyed by the call's arguments. The file is read once per
    process and rewritten after every new result. Only use this for calls
    whose result depends on nothing but the arguments.

    Args:
        cache_file: JSON file backing the cache
        enabled: When False the function is called every time
    """
    cache_file = str(cache_file)

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            if not enabled:
                return await func(*args, **kwargs)

            if cache_file not in _MEMORY:
                _MEMORY[cache_file] = load_json(cache_file, default={})
            cache = _MEMORY[cache_file]

            key = cache_key(args, kwargs)
            if key in cache:
                LOG.debug("Cache hit for %s in %s", func.__name__, cache_file)
                return cache[key]

            result = await func(*args, **kwargs)
            cache[key] = result
            save_json(cache_file, cache)
            return result

        return wrapper

    return decorator


def clear_memory() -> None:
    """Forget the in-memory copies so the next call re-reads each file."""
    _MEMORY.clear()

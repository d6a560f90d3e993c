import functools
from typing import Callable

import structlog
from diskcache import Cache

from ..config import settings

logger = structlog.get_logger("venueos.cache")

_cache: Cache | None = None


def get_cache() -> Cache:
    global _cache
    if _cache is None:
        _cache = Cache(settings.CACHE_DIR)
    return _cache


def set_cache(cache: Cache | None) -> None:
    """Swaps the backing cache, e.g. to a per-test directory."""
    global _cache
    _cache = cache


def dashboard_tag(tenant_id: int) -> str:
    return f"dashboard:{tenant_id}"


def event_tag(event_id: int) -> str:
    return f"event:{event_id}"


def cached(tag_fn: Callable[..., str], ttl_seconds: int | None = None):
    """
    Caches results on disk under a tag computed from the call arguments.

    revalidate_tag() drops every entry stored under a tag, so writers never need
    to know the exact keys readers used.
    """
    def decorator(func: Callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            if not settings.CACHE_ENABLED:
                return func(*args, **kwargs)

            tag = tag_fn(*args, **kwargs)
            # first positional arg is the Session, never part of the key
            key_parts = [func.__module__, func.__name__, tag]
            for arg in args[1:]:
                key_parts.append(str(arg))
            for k, v in sorted(kwargs.items()):
                key_parts.append(f"{k}={v}")
            key = ":".join(key_parts)

            cache = get_cache()
            hit = cache.get(key, default=None)
            if hit is not None:
                return hit

            result = func(*args, **kwargs)
            cache.set(
                key,
                result,
                expire=ttl_seconds or settings.CACHE_DEFAULT_TTL_SECONDS,
                tag=tag,
            )
            return result
        return wrapper
    return decorator


def revalidate_tag(tag: str) -> int:
    try:
        evicted = get_cache().evict(tag)
    except Exception as exc:
        logger.warning("cache_revalidate_failed", tag=tag, error=str(exc))
        return 0
    if evicted:
        logger.info("cache_revalidated", tag=tag, evicted=evicted)
    return int(evicted or 0)


def revalidate_tags(*tags: str) -> int:
    return sum(revalidate_tag(tag) for tag in tags if tag)

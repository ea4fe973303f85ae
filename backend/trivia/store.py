from __future__ import annotations

import asyncio
import copy
import itertools
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import settings
from .errors import ConcurrencyConflict, StoreUnavailableError

logger = structlog.get_logger(__name__)

OnChange = Callable[[Any], None]
Path = Tuple[str, ...]


def split_path(path: str) -> Path:
    return tuple(part for part in str(path).strip("/").split("/") if part)


def join_path(*parts: Any) -> str:
    cleaned = (str(part).strip("/") for part in parts)
    return "/".join(part for part in cleaned if part)


def _normalise(value: Any) -> Any:
    # Mappings lose None members, and a mapping left empty counts as a delete.
    if isinstance(value, Mapping):
        cleaned: Dict[str, Any] = {}
        for key, item in value.items():
            item = _normalise(item)
            if item is not None:
                cleaned[str(key)] = item
        return cleaned or None
    if isinstance(value, (list, tuple)):
        return [_normalise(item) for item in value]
    return copy.deepcopy(value)


def _overlaps(a: Path, b: Path) -> bool:
    shortest = min(len(a), len(b))
    return a[:shortest] == b[:shortest]


class Subscription:
    def __init__(self, sub_id: int, path: Path, on_change: OnChange):
        self.id = sub_id
        self.path = path
        self.on_change = on_change

    def __repr__(self) -> str:
        return f"Subscription(id={self.id}, path={'/'.join(self.path)!r})"


class TreeStore:
    """In-process hierarchical key-value tree with push notifications.

    Paths are ``/``-separated. Writing a mapping replaces the whole subtree,
    writing ``None`` (or an empty mapping) deletes it, and containers left
    empty by a delete are pruned. Subscribers are called with a copy of the
    value at their path once on registration and again whenever a mutation
    changes that value.
    """

    def __init__(self):
        self._root: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    async def _ensure_available(self) -> None:
        """Connectivity hook; remote backends raise ``StoreUnavailableError`` here."""

    async def read(self, path: str) -> Any:
        await self._ensure_available()
        async with self._lock:
            return copy.deepcopy(self._get(split_path(path)))

    async def write(self, path: str, value: Any) -> None:
        await self.transaction({path: value})

    async def delete(self, path: str) -> None:
        await self.transaction({path: None})

    async def write_if_absent(self, path: str, value: Any) -> bool:
        """Write ``value`` only when nothing is stored at ``path`` yet."""
        return await self.compare_and_set(path, None, value)

    async def compare_and_set(self, path: str, expected: Any, value: Any) -> bool:
        try:
            await self.transaction({path: value}, conditions={path: expected})
        except ConcurrencyConflict:
            return False
        return True

    async def transaction(
        self,
        updates: Mapping[str, Any],
        *,
        conditions: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Apply several path writes atomically.

        Every ``conditions`` entry must match the stored value (``None`` means
        absent) or nothing is written and ``ConcurrencyConflict`` is raised.
        """
        await self._ensure_available()
        writes = [(split_path(path), _normalise(value)) for path, value in updates.items()]

        async with self._lock:
            for path, expected in (conditions or {}).items():
                actual = self._get(split_path(path))
                if actual != _normalise(expected):
                    raise ConcurrencyConflict(f"Precondition failed at {path!r}")

            affected = [
                sub
                for sub in self._subscriptions.values()
                if any(_overlaps(sub.path, target) for target, _ in writes)
            ]
            before = {sub.id: copy.deepcopy(self._get(sub.path)) for sub in affected}

            for path, value in writes:
                self._set(path, value)

            changed = []
            for sub in affected:
                after = self._get(sub.path)
                if after != before[sub.id]:
                    changed.append((sub, copy.deepcopy(after)))

        for sub, value in changed:
            self._notify(sub, value)

    def subscribe(self, path: str, on_change: OnChange) -> Subscription:
        sub = Subscription(next(self._ids), split_path(path), on_change)
        self._subscriptions[sub.id] = sub
        self._notify(sub, copy.deepcopy(self._get(sub.path)))
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    def _notify(self, sub: Subscription, value: Any) -> None:
        if sub.id not in self._subscriptions:
            return
        try:
            sub.on_change(value)
        except Exception:
            logger.exception("store.subscriber_failed", path="/".join(sub.path))

    def _get(self, parts: Path) -> Any:
        node: Any = self._root
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        if isinstance(node, dict) and not node:
            return None
        return node

    def _set(self, parts: Path, value: Any) -> None:
        if not parts:
            self._root = value if isinstance(value, dict) else {}
            return

        trail: List[Dict[str, Any]] = [self._root]
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                if value is None:
                    return
                child = {}
                node[part] = child
            node = child
            trail.append(node)

        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = value

        for depth in range(len(parts) - 1, 0, -1):
            if trail[depth]:
                break
            trail[depth - 1].pop(parts[depth - 1], None)


async def with_store_retry(operation: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
    """Run ``operation`` again, with backoff, while the store is unavailable.

    Callers pass whole operations whose writes are single transactions, so a
    retry never observes a half-applied change.
    """

    def _log_retry(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "store.retry",
            operation=getattr(operation, "__name__", repr(operation)),
            attempt=retry_state.attempt_number,
            error=str(exc),
        )

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(StoreUnavailableError),
        stop=stop_after_attempt(settings.STORE_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=settings.STORE_RETRY_BASE_DELAY, max=settings.STORE_RETRY_MAX_DELAY),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation(*args, **kwargs)


store = TreeStore()

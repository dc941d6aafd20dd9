"""Subscription tracking and delayed eviction of unused entries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict
from typing import Any

from tagquery.duration import parse_duration
from tagquery.types import SubscriptionOptions

logger = logging.getLogger(__name__)


class SubscriptionRegistry:
    """Active consumers per cache key.

    The longest ``keep_unused_data_for`` requested by any subscription is
    remembered until the key is removed. When present it replaces the
    endpoint and api retention for that key, shorter or longer.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, dict[str, SubscriptionOptions]] = {}
        self._retention: dict[str, int] = {}

    def subscribe(
        self,
        key: str,
        subscription_id: str,
        options: SubscriptionOptions | None = None,
    ) -> bool:
        """Add a subscription. Returns True if the key had none before."""
        options = options or SubscriptionOptions()
        subs = self._subscriptions.setdefault(key, {})
        first = not subs
        subs[subscription_id] = options
        if options.keep_unused_data_for is not None:
            keep = parse_duration(options.keep_unused_data_for)
            self._retention[key] = max(self._retention.get(key, 0), keep)
        logger.debug(
            "%s: +subscription %s (%d active)", key, subscription_id, len(subs)
        )
        return first

    def unsubscribe(self, key: str, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if that was the last one."""
        subs = self._subscriptions.get(key)
        if not subs or subscription_id not in subs:
            return False
        del subs[subscription_id]
        logger.debug(
            "%s: -subscription %s (%d active)", key, subscription_id, len(subs)
        )
        if subs:
            return False
        del self._subscriptions[key]
        return True

    def update_options(
        self, key: str, subscription_id: str, options: SubscriptionOptions
    ) -> bool:
        subs = self._subscriptions.get(key)
        if not subs or subscription_id not in subs:
            return False
        subs[subscription_id] = options
        return True

    def count(self, key: str) -> int:
        return len(self._subscriptions.get(key, ()))

    def options_for(self, key: str) -> list[SubscriptionOptions]:
        return list(self._subscriptions.get(key, {}).values())

    def retention_for(self, key: str) -> int | None:
        return self._retention.get(key)

    def subscribed_keys(self) -> list[str]:
        return list(self._subscriptions)

    def wants(self, key: str, option: str, default: bool) -> bool:
        """Whether any subscription opts into a refetch trigger.

        ``option`` is ``"refetch_on_focus"`` or ``"refetch_on_reconnect"``;
        when no subscription sets it explicitly ``default`` applies.
        """
        values = [getattr(opts, option) for opts in self.options_for(key)]
        if any(value is True for value in values):
            return True
        return all(value is None for value in values) and default

    def remove_key(self, key: str) -> None:
        self._subscriptions.pop(key, None)
        self._retention.pop(key, None)

    def clear(self) -> None:
        self._subscriptions.clear()
        self._retention.clear()

    def to_dict(self) -> dict[str, dict[str, dict[str, Any]]]:
        return {
            key: {sid: asdict(opts) for sid, opts in subs.items()}
            for key, subs in self._subscriptions.items()
        }


class GarbageCollector:
    """Per-key eviction timers on the running event loop."""

    def __init__(self, on_expire: Callable[[str], None]) -> None:
        self._on_expire = on_expire
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def schedule(self, key: str, delay_ms: int) -> None:
        """(Re)start the eviction timer for ``key``."""
        self.cancel(key)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay_ms / 1000, self._expire, key)
        logger.debug("%s: eviction scheduled in %dms", key, delay_ms)

    def cancel(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
            logger.debug("%s: eviction canceled", key)

    def is_scheduled(self, key: str) -> bool:
        return key in self._timers

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    def _expire(self, key: str) -> None:
        self._timers.pop(key, None)
        self._on_expire(key)


__all__ = ["GarbageCollector", "SubscriptionRegistry"]

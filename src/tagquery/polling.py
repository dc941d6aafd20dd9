"""Interval refetching for subscribed entries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from tagquery.duration import parse_duration
from tagquery.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Poll:
    interval: int
    handle: asyncio.TimerHandle | None = None


class PollingScheduler:
    """Drives one repeating timer per key at the lowest requested interval.

    The next poll is scheduled after each settle, so a slow request never
    overlaps with the following poll.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        refetch: Callable[[str], None],
        is_focused: Callable[[], bool],
    ) -> None:
        self._registry = registry
        self._refetch = refetch
        self._is_focused = is_focused
        self._polls: dict[str, _Poll] = {}

    def _lowest_interval(self, key: str) -> tuple[int, bool]:
        lowest = 0
        skip_unfocused = False
        for options in self._registry.options_for(key):
            interval = parse_duration(options.polling_interval)
            if interval > 0 and (lowest == 0 or interval < lowest):
                lowest = interval
            skip_unfocused = skip_unfocused or options.skip_polling_if_unfocused
        return lowest, skip_unfocused

    def update(self, key: str) -> None:
        """Re-evaluate after subscriptions for ``key`` changed."""
        interval, _ = self._lowest_interval(key)
        poll = self._polls.get(key)
        if interval == 0:
            self.cancel(key)
            return
        if poll is None or poll.handle is None or poll.interval != interval:
            self._start(key, interval)

    def settled(self, key: str) -> None:
        """Schedule the next poll after an attempt for ``key`` settled."""
        interval, _ = self._lowest_interval(key)
        if interval == 0:
            self.cancel(key)
        else:
            self._start(key, interval)

    def _start(self, key: str, interval: int) -> None:
        self.cancel(key)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(interval / 1000, self._fire, key)
        self._polls[key] = _Poll(interval, handle)

    def _fire(self, key: str) -> None:
        poll = self._polls.get(key)
        if poll is None:
            return
        poll.handle = None
        _, skip_unfocused = self._lowest_interval(key)
        if skip_unfocused and not self._is_focused():
            logger.debug("%s: poll skipped while unfocused", key)
            self._start(key, poll.interval)
            return
        logger.debug("%s: polling", key)
        self._refetch(key)

    def cancel(self, key: str) -> None:
        poll = self._polls.pop(key, None)
        if poll is not None and poll.handle is not None:
            poll.handle.cancel()

    def cancel_all(self) -> None:
        for key in list(self._polls):
            self.cancel(key)


__all__ = ["PollingScheduler"]

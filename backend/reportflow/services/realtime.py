# Overview: Live per-user channel transport and caller-owned subscription handles.

"""
Live channel

LiveChannel is the in-process transport: publish(recipient_id, event) hands
the event to every handler subscribed for that recipient and returns without
waiting for anyone to act on it. It only reaches subscribers living in the
same process; a multi-process deployment swaps in a broker-backed transport
with the same publish/subscribe/unsubscribe surface.

Subscription is the handle a consumer (the SSE stream, a test, a worker)
owns. When the transport drops it, the handle resubscribes on its own after
a bounded exponential backoff instead of staying silently unsubscribed.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Any]
ErrorCallback = Callable[[Exception], Any]


class ChannelUnavailable(Exception):
    """The live transport is closed or has dropped the connection."""
    pass


class LiveChannel:
    def __init__(self):
        self._lock = threading.RLock()
        self._handlers: dict[int, dict[int, tuple[Handler, Optional[ErrorCallback]]]] = {}
        self._tokens = itertools.count(1)
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    def open(self) -> None:
        with self._lock:
            self._closed = False

    def close(self, reason: str = "channel closed") -> None:
        """Stop accepting traffic and drop every subscriber."""
        with self._lock:
            self._closed = True
        self.drop(reason=reason)

    def subscribe(self, recipient_id: int, handler: Handler, on_error: Optional[ErrorCallback] = None) -> int:
        with self._lock:
            if self._closed:
                raise ChannelUnavailable("live channel is closed")
            token = next(self._tokens)
            self._handlers.setdefault(recipient_id, {})[token] = (handler, on_error)
            return token

    def unsubscribe(self, recipient_id: int, token: int) -> None:
        with self._lock:
            handlers = self._handlers.get(recipient_id)
            if not handlers:
                return
            handlers.pop(token, None)
            if not handlers:
                del self._handlers[recipient_id]

    def subscriber_count(self, recipient_id: int) -> int:
        with self._lock:
            return len(self._handlers.get(recipient_id, {}))

    def publish(self, recipient_id: int, event: dict) -> int:
        """
        Deliver event to the recipient's current subscribers.

        Returns the number of handlers reached. A recipient with no
        subscribers is not an error: the persisted notification is still
        there for the next fetch.
        """
        with self._lock:
            if self._closed:
                raise ChannelUnavailable("live channel is closed")
            handlers = list(self._handlers.get(recipient_id, {}).items())

        delivered = 0
        for token, (handler, on_error) in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as exc:
                logger.warning("Live handler for user %s failed; dropping it: %s", recipient_id, exc)
                self.unsubscribe(recipient_id, token)
                if on_error is not None:
                    on_error(exc)
        return delivered

    def drop(self, recipient_id: int | None = None, reason: str = "connection dropped") -> int:
        """
        Drop subscriptions (one recipient, or all) and signal their error callbacks.

        Returns the number of subscriptions dropped.
        """
        with self._lock:
            if recipient_id is None:
                dropped = [h for handlers in self._handlers.values() for h in handlers.values()]
                self._handlers.clear()
            else:
                dropped = list(self._handlers.pop(recipient_id, {}).values())

        error = ChannelUnavailable(reason)
        for _handler, on_error in dropped:
            if on_error is not None:
                on_error(error)
        return len(dropped)


@dataclass(frozen=True)
class ReconnectPolicy:
    """Bounded exponential backoff: base, base*factor, ... capped at max_delay."""

    base_delay: float = 5.0
    max_delay: float = 60.0
    factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (self.factor ** attempt))


def _timer_scheduler(delay: float, callback: Callable[[], Any]):
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class Subscription:
    """
    Caller-owned live subscription for one recipient.

    States: idle -> active -> reconnecting -> active ... -> closed
    """

    def __init__(
        self,
        channel: LiveChannel,
        recipient_id: int,
        handler: Handler,
        *,
        policy: ReconnectPolicy | None = None,
        scheduler: Callable[[float, Callable[[], Any]], Any] | None = None,
    ):
        self.channel = channel
        self.recipient_id = recipient_id
        self.handler = handler
        self.policy = policy or ReconnectPolicy()
        self._schedule = scheduler or _timer_scheduler
        self._lock = threading.Lock()
        self._token: int | None = None
        self._pending = None
        self._attempt = 0
        self.state = "idle"
        self.reconnects = 0

    @property
    def active(self) -> bool:
        return self.state == "active"

    def start(self) -> "Subscription":
        self._connect()
        return self

    def _connect(self) -> None:
        with self._lock:
            if self.state == "closed":
                return
            self._pending = None
        try:
            token = self.channel.subscribe(self.recipient_id, self.handler, on_error=self._on_error)
        except ChannelUnavailable as exc:
            self._on_error(exc)
            return
        with self._lock:
            if self.state == "closed":
                self.channel.unsubscribe(self.recipient_id, token)
                return
            if self.state == "reconnecting":
                self.reconnects += 1
                logger.info("Live subscription for user %s restored", self.recipient_id)
            self._token = token
            self._attempt = 0
            self.state = "active"

    def _on_error(self, exc: Exception) -> None:
        with self._lock:
            if self.state == "closed":
                return
            self._token = None
            self.state = "reconnecting"
            delay = self.policy.delay_for(self._attempt)
            self._attempt += 1
            logger.warning(
                "Live subscription for user %s lost (%s); resubscribing in %.1fs",
                self.recipient_id, exc, delay,
            )
            self._pending = self._schedule(delay, self._connect)

    def close(self) -> None:
        with self._lock:
            self.state = "closed"
            token, self._token = self._token, None
            pending, self._pending = self._pending, None
        if pending is not None and hasattr(pending, "cancel"):
            pending.cancel()
        if token is not None:
            self.channel.unsubscribe(self.recipient_id, token)

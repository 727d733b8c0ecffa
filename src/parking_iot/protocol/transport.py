"""Publish/subscribe transport abstraction and in-process broker."""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Callable, Optional

from ..errors import TransportError
from ..metrics import record_dropped_message

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


def topic_matches(topic_filter: str, topic: str) -> bool:
    """
    Check a topic against an MQTT-style filter.

    '+' matches exactly one level, '#' matches the remaining levels.
    """
    filter_levels = topic_filter.split("/")
    topic_levels = topic.split("/")

    for i, level in enumerate(filter_levels):
        if level == "#":
            return True
        if i >= len(topic_levels):
            return False
        if level != "+" and level != topic_levels[i]:
            return False

    return len(filter_levels) == len(topic_levels)


class Transport(ABC):
    """
    Minimal at-most-once publish/subscribe transport.

    Handlers are always invoked on the asyncio event loop that was
    running when start() was awaited.
    """

    @abstractmethod
    async def start(self) -> None:
        """Connect and begin delivering messages."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop delivering messages and disconnect."""

    @abstractmethod
    def publish(self, topic: str, payload: bytes) -> None:
        """
        Publish a payload without waiting for delivery.

        Raises:
            TransportError: If the message could not be handed to the transport
        """

    @abstractmethod
    def subscribe(self, topic_filter: str, handler: MessageHandler) -> None:
        """Register a handler for every topic matching topic_filter."""

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Whether publishes are currently accepted."""


class InMemoryBroker(Transport):
    """
    Process-local broker used for single-process simulation and tests.

    Delivery is asynchronous: publish() schedules handlers on the event
    loop instead of calling them inline, so senders never observe their
    own side effects synchronously. An optional drop rate simulates an
    unreliable link.
    """

    def __init__(self, drop_rate: float = 0.0, rng: Optional[random.Random] = None):
        """
        Initialize the broker.

        Args:
            drop_rate: Probability (0-1) that a published message is lost
            rng: Random source used for the drop decision
        """
        self.drop_rate = drop_rate
        self._rng = rng or random.Random()
        self._subscriptions: list[tuple[str, MessageHandler]] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = True

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._running = True

    async def stop(self) -> None:
        self._running = False

    @property
    def connected(self) -> bool:
        return self._running

    def subscribe(self, topic_filter: str, handler: MessageHandler) -> None:
        self._subscriptions.append((topic_filter, handler))
        logger.debug(f"Subscribed to {topic_filter}")

    def publish(self, topic: str, payload: bytes) -> None:
        if not self._running:
            raise TransportError(f"Broker stopped, cannot publish to {topic}")

        if self.drop_rate and self._rng.random() < self.drop_rate:
            logger.debug(f"Simulated loss of message on {topic}")
            record_dropped_message("simulated_loss")
            return

        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None

        for topic_filter, handler in list(self._subscriptions):
            if not topic_matches(topic_filter, topic):
                continue
            if loop is None:
                self._deliver(handler, topic, payload)
            else:
                loop.call_soon(self._deliver, handler, topic, payload)

    def _deliver(self, handler: MessageHandler, topic: str, payload: bytes) -> None:
        if not self._running:
            return
        try:
            handler(topic, payload)
        except Exception as e:
            logger.exception(f"Handler for {topic} failed: {e}")

"""
Notifier

Per-product topics fanned out to WebSocket subscribers.

Delivery is at-most-once and best-effort: frames go into a bounded
per-connection queue and are dropped when it is full. Every frame carries a
per-topic sequence number that only increases, so clients can discard late
or duplicate frames and reconcile with an authoritative read on reconnect.

With the Redis relay enabled, publishes go through a Redis channel so every
API instance delivers them; sequence numbers then come from a Redis counter
and are identical on every instance.
"""

import asyncio
import itertools
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog
from prometheus_client import Counter, Gauge
from redis.asyncio import Redis
from redis.exceptions import RedisError

from viewtrack.config.settings import NotifierSettings

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

FRAMES_DELIVERED = Counter(
    "viewtrack_notifier_frames_total",
    "Frames queued to subscribers",
    ["event"],
)

FRAMES_DROPPED = Counter(
    "viewtrack_notifier_frames_dropped_total",
    "Frames dropped on full subscriber queues or out-of-order arrival",
    ["reason"],
)

ACTIVE_TOPICS = Gauge("viewtrack_notifier_topics", "Topics currently held in memory")
ACTIVE_SUBSCRIBERS = Gauge("viewtrack_notifier_subscribers", "Connected subscribers")

RELAY_RECONNECTS = Counter(
    "viewtrack_notifier_relay_reconnects_total",
    "Times the relay listener lost Redis and reconnected",
)


class NotifierEvent(str, Enum):
    """Frames the notifier broadcasts"""
    VIEW = "view"
    VIEW_COUNT = "viewCount"
    UPVOTE_COUNT = "upvoteCount"
    BOOKMARK_COUNT = "bookmarkCount"
    COMMENT_COUNT = "commentCount"
    PRODUCT_UPDATE = "productUpdate"


class SubscriptionState(str, Enum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    RECEIVING = "receiving"
    CLOSED = "closed"


def topic_name(product_id) -> str:
    return f"product:{product_id}"


@dataclass
class Frame:
    topic: str
    seq: int
    event: str
    data: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"topic": self.topic, "seq": self.seq, "event": self.event, "data": self.data}


_subscriber_ids = itertools.count(1)


class Subscriber:
    """One client connection and its outbound frame buffer"""

    def __init__(self, queue_size: int = 256):
        self.id = next(_subscriber_ids)
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=queue_size)
        self.topics: Set[str] = set()
        self.state = SubscriptionState.CONNECTING
        self.dropped = 0

    def deliver(self, message: Dict[str, Any]) -> bool:
        if self.state == SubscriptionState.CLOSED:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            FRAMES_DROPPED.labels(reason="queue_full").inc()
            return False
        if self.state == SubscriptionState.SUBSCRIBED and "seq" in message and "op" not in message:
            self.state = SubscriptionState.RECEIVING
        return True

    async def next_message(self) -> Dict[str, Any]:
        return await self.queue.get()


@dataclass
class Topic:
    name: str
    seq: int = 0
    subscribers: Set[Subscriber] = field(default_factory=set)
    gc_handle: Optional[asyncio.TimerHandle] = None


class TopicHub:
    """
    In-process topic registry.

    Topics are created on first subscribe and collected ``gc_seconds`` after
    their last subscriber leaves, unless someone resubscribes first.
    """

    def __init__(self, settings: Optional[NotifierSettings] = None):
        self.settings = settings or NotifierSettings()
        self.topics: Dict[str, Topic] = {}
        self.subscribers: Set[Subscriber] = set()

    def connect(self) -> Subscriber:
        subscriber = Subscriber(queue_size=self.settings.subscriber_queue_size)
        self.subscribers.add(subscriber)
        ACTIVE_SUBSCRIBERS.set(len(self.subscribers))
        return subscriber

    def subscribe(self, subscriber: Subscriber, product_id) -> Topic:
        name = topic_name(product_id)
        topic = self.topics.get(name)
        if topic is None:
            topic = Topic(name=name)
            self.topics[name] = topic
            ACTIVE_TOPICS.set(len(self.topics))
        if topic.gc_handle is not None:
            topic.gc_handle.cancel()
            topic.gc_handle = None

        topic.subscribers.add(subscriber)
        subscriber.topics.add(name)
        if subscriber.state == SubscriptionState.CONNECTING:
            subscriber.state = SubscriptionState.SUBSCRIBED
        logger.debug("Subscribed", subscriber=subscriber.id, topic=name, seq=topic.seq)
        return topic

    def unsubscribe(self, subscriber: Subscriber, product_id) -> None:
        self._release(subscriber, topic_name(product_id))

    def disconnect(self, subscriber: Subscriber) -> None:
        for name in list(subscriber.topics):
            self._release(subscriber, name)
        subscriber.state = SubscriptionState.CLOSED
        self.subscribers.discard(subscriber)
        ACTIVE_SUBSCRIBERS.set(len(self.subscribers))

    def _release(self, subscriber: Subscriber, name: str) -> None:
        subscriber.topics.discard(name)
        topic = self.topics.get(name)
        if topic is None:
            return
        topic.subscribers.discard(subscriber)
        if not topic.subscribers and topic.gc_handle is None:
            loop = asyncio.get_running_loop()
            topic.gc_handle = loop.call_later(self.settings.topic_gc_seconds, self._collect, name)

    def _collect(self, name: str) -> None:
        topic = self.topics.get(name)
        if topic is None or topic.subscribers:
            return
        del self.topics[name]
        ACTIVE_TOPICS.set(len(self.topics))
        logger.debug("Topic collected", topic=name)

    def current_seq(self, product_id) -> int:
        topic = self.topics.get(topic_name(product_id))
        return topic.seq if topic else 0

    def dispatch(self, product_id, event: str, data: Dict[str, Any], seq: Optional[int] = None) -> Optional[Frame]:
        """
        Queue a frame to every subscriber of the product's topic.

        Without ``seq`` the topic assigns the next number. A supplied ``seq``
        at or below the topic's last one is dropped.
        """
        topic = self.topics.get(topic_name(product_id))
        if topic is None:
            return None

        if seq is None:
            seq = topic.seq + 1
        elif seq <= topic.seq:
            FRAMES_DROPPED.labels(reason="stale").inc()
            return None
        topic.seq = seq

        frame = Frame(topic=topic.name, seq=seq, event=event, data=data)
        message = frame.to_dict()
        for subscriber in list(topic.subscribers):
            if subscriber.deliver(message):
                FRAMES_DELIVERED.labels(event=event).inc()
        return frame

    def close(self) -> None:
        for topic in self.topics.values():
            if topic.gc_handle is not None:
                topic.gc_handle.cancel()
        for subscriber in list(self.subscribers):
            self.disconnect(subscriber)
        self.topics.clear()
        ACTIVE_TOPICS.set(0)


# KEYS[1] sequence counter, KEYS[2] channel
# ARGV[1] JSON object without the seq field
PUBLISH_SCRIPT = """
local seq = redis.call('INCR', KEYS[1])
redis.call('PUBLISH', KEYS[2], '{"seq":' .. seq .. ',' .. string.sub(ARGV[1], 2))
return seq
"""


class RedisRelay:
    """
    Cross-instance fan-out over Redis pub/sub.

    A publish increments the topic's counter and publishes the frame in one
    script, so channel order always matches sequence order. The listener
    reconnects with capped exponential backoff when Redis goes away; frames
    published while it is disconnected are lost.
    """

    def __init__(
        self,
        redis: Redis,
        hub: TopicHub,
        settings: Optional[NotifierSettings] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.redis = redis
        self.hub = hub
        self.settings = settings or NotifierSettings()
        self.failures = 0
        self._sleep = sleep or asyncio.sleep
        self._publish = redis.register_script(PUBLISH_SCRIPT)

    def channel(self, product_id) -> str:
        return f"{self.settings.channel_prefix}:{product_id}"

    def seq_key(self, product_id) -> str:
        return f"{self.settings.channel_prefix}:seq:{product_id}"

    async def publish(self, product_id, event: str, data: Dict[str, Any]) -> int:
        payload = json.dumps({"productId": str(product_id), "event": event, "data": data}, default=str)
        seq = await self._publish(keys=[self.seq_key(product_id), self.channel(product_id)], args=[payload])
        return int(seq)

    async def sync_topic(self, topic: Topic, product_id) -> int:
        """Raise ``topic.seq`` to the shared counter so an ack matches every instance."""
        try:
            shared = int(await self.redis.get(self.seq_key(product_id)) or 0)
        except (RedisError, OSError) as e:
            logger.warning("Sequence lookup failed", topic=topic.name, error=str(e))
            return topic.seq
        if shared > topic.seq:
            topic.seq = shared
        return topic.seq

    def handle_message(self, message: Dict[str, Any]) -> Optional[Frame]:
        if message.get("type") not in ("message", "pmessage"):
            return None
        raw = message.get("data")
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            payload = json.loads(raw)
            return self.hub.dispatch(
                payload["productId"], payload["event"], payload.get("data") or {}, seq=int(payload["seq"])
            )
        except (TypeError, ValueError, KeyError) as e:
            logger.warning("Malformed relay message", error=str(e))
            return None

    def backoff(self) -> float:
        delay = self.settings.relay_reconnect_base_seconds * (2 ** (self.failures - 1))
        return min(delay, self.settings.relay_reconnect_max_seconds)

    async def run(self) -> None:
        """Listen on every product channel until cancelled."""
        pattern = f"{self.settings.channel_prefix}:*"
        try:
            while True:
                try:
                    await self._listen(pattern)
                except (RedisError, OSError) as e:
                    self.failures += 1
                    delay = self.backoff()
                    RELAY_RECONNECTS.inc()
                    logger.warning(
                        "Notifier relay connection lost",
                        attempt=self.failures,
                        delay_seconds=delay,
                        error=str(e) or type(e).__name__,
                    )
                    await self._sleep(delay)
        finally:
            logger.info("Notifier relay stopped")

    async def _listen(self, pattern: str) -> None:
        pubsub = self.redis.pubsub()
        try:
            await pubsub.psubscribe(pattern)
            self.failures = 0
            logger.info("Notifier relay listening", pattern=pattern)
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is not None:
                    self.handle_message(message)
        finally:
            await pubsub.aclose()


class Notifier:
    """
    Publishing facade used by ingress and collaborators.

    Failures are logged and swallowed; delivery is a hint, the store is the
    source of truth.
    """

    def __init__(self, hub: TopicHub, relay: Optional[RedisRelay] = None):
        self.hub = hub
        self.relay = relay

    async def publish(self, product_id: uuid.UUID, event: str, data: Dict[str, Any]) -> None:
        try:
            if self.relay is not None:
                await self.relay.publish(product_id, event, data)
            else:
                self.hub.dispatch(product_id, event, data)
        except Exception as e:
            logger.warning("Notifier publish failed", product_id=str(product_id), notifier_event=event, error=str(e))

"""
Unique-view claims in Redis.

One key per (product, viewer identity) holds the event time of the last
unique view and the id of the view that claimed it, with a TTL equal to the
dedup window. A view is unique when it can claim the key: either the key is
absent (``SET NX``) or the stored unique is at least one window older than
this view (compare-and-set under ``WATCH``). Any Ingestor instance may claim;
exactly one wins.

A claim whose reply was lost and is retried finds its own token in the key
and still counts as the winner. A claim whose raw event could not be written
is released again, but only while the key still holds that claim's token.
"""

import uuid
from datetime import datetime, timedelta
from typing import Optional, Tuple

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

from viewtrack.clock import to_epoch

logger = structlog.get_logger(__name__)

KEY_PREFIX = "viewtrack:dedup"


class DedupStore:
    """
    Set-if-absent map of last unique view per viewer.

    Example:
        dedup = DedupStore(redis, window=timedelta(hours=24))
        unique = await dedup.claim(product_id, "u:42", clock.now(), claimant=str(event_id))
    """

    def __init__(self, redis: Redis, window: timedelta = timedelta(hours=24)):
        self.redis = redis
        self.window = window

    @property
    def window_seconds(self) -> int:
        return int(self.window.total_seconds())

    def key(self, product_id, viewer_key: str) -> str:
        return f"{KEY_PREFIX}:{product_id}:{viewer_key}"

    async def claim(
        self,
        product_id,
        viewer_key: str,
        at: datetime,
        claimant: Optional[str] = None,
    ) -> bool:
        """
        Claim the unique slot for a view at ``at``.

        Args:
            claimant: Stable id of the claiming view. Pass the same value on
                retries so a claim that landed without a reply is recognised.

        Returns:
            True when this view is the first in the window for the viewer
        """
        key = self.key(product_id, viewer_key)
        stamp = to_epoch(at)
        token = _token(stamp, claimant or uuid.uuid4().hex)

        if await self.redis.set(key, token, nx=True, ex=self.window_seconds):
            return True

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                stored = _as_str(await pipe.get(key))
                if stored == token:
                    await pipe.unwatch()
                    logger.debug("Dedup claim already held", key=key)
                    return True
                current, _ = _parse(stored)
                if current is not None and stamp - current < self.window_seconds:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, token, ex=self.window_seconds)
                await pipe.execute()
                return True
            except WatchError:
                # A concurrent view claimed the slot first
                logger.debug("Dedup claim lost race", key=key)
                return False

    async def release(self, product_id, viewer_key: str, at: datetime, claimant: str) -> bool:
        """
        Give back a claim made by ``claimant`` at ``at``.

        The key is deleted only while it still holds that claim; a newer
        claim by another view is left alone.

        Returns:
            True when the key was deleted
        """
        key = self.key(product_id, viewer_key)
        token = _token(to_epoch(at), claimant)

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if _as_str(await pipe.get(key)) != token:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except WatchError:
                logger.debug("Dedup release skipped, key changed", key=key)
                return False

        logger.info("Dedup claim released", key=key, claimant=claimant)
        return True

    async def last_unique(self, product_id, viewer_key: str) -> Optional[float]:
        """Epoch seconds of the viewer's last unique view, if still tracked."""
        stamp, _ = _parse(_as_str(await self.redis.get(self.key(product_id, viewer_key))))
        return stamp


def _token(stamp: float, claimant: str) -> str:
    return f"{stamp!r}|{claimant}"


def _as_str(value) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode()
    return value


def _parse(value: Optional[str]) -> Tuple[Optional[float], Optional[str]]:
    if value is None:
        return None, None
    stamp, _, claimant = value.partition("|")
    return float(stamp), claimant or None

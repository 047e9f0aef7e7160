"""
Subscription WebSocket

Client messages: ``{"op": "subscribe" | "unsubscribe", "productId": ...}``.
Server frames: ``{"topic", "seq", "event", "data"}``, plus control frames
``{"op": "subscribed" | "unsubscribed" | "error", ...}``. A ``subscribed``
ack carries the topic's current ``seq``, read from the shared Redis counter when
the relay is on; the next frame on that topic has a higher one.
"""

import asyncio
import uuid

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from viewtrack.pipeline import ViewPipeline
from viewtrack.serving.api.deps import get_pipeline
from viewtrack.serving.notifier import Subscriber, topic_name

logger = structlog.get_logger(__name__)
router = APIRouter()


async def _pump(websocket: WebSocket, subscriber: Subscriber) -> None:
    while True:
        message = await subscriber.next_message()
        await websocket.send_json(message)


async def _handle_message(pipeline: ViewPipeline, subscriber: Subscriber, message) -> None:
    if not isinstance(message, dict):
        subscriber.deliver({"op": "error", "message": "Expected a JSON object"})
        return

    op = message.get("op")
    try:
        product_id = uuid.UUID(str(message.get("productId")))
    except ValueError:
        subscriber.deliver({"op": "error", "message": "Invalid productId"})
        return

    hub = pipeline.hub
    if op == "subscribe":
        topic = hub.subscribe(subscriber, product_id)
        if pipeline.relay is not None:
            await pipeline.relay.sync_topic(topic, product_id)
        subscriber.deliver({"op": "subscribed", "topic": topic.name, "seq": topic.seq})
    elif op == "unsubscribe":
        hub.unsubscribe(subscriber, product_id)
        subscriber.deliver({"op": "unsubscribed", "topic": topic_name(product_id)})
    else:
        subscriber.deliver({"op": "error", "message": f"Unknown op {op!r}"})


@router.websocket("/subscribe")
async def subscribe(websocket: WebSocket, pipeline: ViewPipeline = Depends(get_pipeline)):
    await websocket.accept()
    hub = pipeline.hub
    subscriber = hub.connect()
    sender = asyncio.create_task(_pump(websocket, subscriber))
    logger.info("Subscriber connected", subscriber=subscriber.id)

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                subscriber.deliver({"op": "error", "message": "Malformed JSON"})
                continue
            await _handle_message(pipeline, subscriber, message)
    except WebSocketDisconnect:
        pass
    finally:
        hub.disconnect(subscriber)
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        logger.info("Subscriber disconnected", subscriber=subscriber.id, dropped=subscriber.dropped)

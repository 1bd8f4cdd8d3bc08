"""WebSocket endpoint streaming live loop updates."""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from loopdash.live.broadcast import TailBroadcastService
from loopdash.models import ErrorMessage

logger = logging.getLogger("loopdash.live")

live_router = APIRouter(tags=["live"])


def _get_service(websocket: WebSocket) -> TailBroadcastService:
    service = getattr(websocket.app.state, "tail_service", None)
    if service is None:
        service = TailBroadcastService()
        websocket.app.state.tail_service = service
    return service


async def _send_error(websocket: WebSocket, message: str) -> None:
    await websocket.send_json(ErrorMessage(message=message).model_dump())


async def _subscribe(service: TailBroadcastService, websocket: WebSocket, loop_id: str) -> None:
    result = service.subscribe(loop_id, websocket)
    if not result.success:
        await _send_error(websocket, result.error or "Subscription rejected")


@live_router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    """Subscribe on open via ``?loopId=``; accepts subscribe/unsubscribe messages."""
    service = _get_service(websocket)
    await websocket.accept()

    initial = websocket.query_params.get("loopId")
    if initial:
        await _subscribe(service, websocket, initial)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await _send_error(websocket, "Invalid message format")
                continue
            if not isinstance(message, dict):
                await _send_error(websocket, "Invalid message format")
                continue

            kind = message.get("type")
            loop_id = message.get("loopId")
            if kind == "subscribe" and isinstance(loop_id, str):
                await _subscribe(service, websocket, loop_id)
            elif kind == "unsubscribe" and isinstance(loop_id, str):
                service.unsubscribe(loop_id, websocket)
            else:
                await _send_error(websocket, f"Unknown message type: {kind}")
    except WebSocketDisconnect:
        logger.debug("Live client disconnected")
    finally:
        removed = service.unsubscribe_all(websocket)
        if removed:
            logger.info("Released %d subscriptions for closed client", removed)

import asyncio
import contextlib
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder

from kinship.core.config import settings
from kinship.progression.engine import ProgressionEngine
from kinship.progression.errors import ProgressionError
from kinship.utils.deps import decode_party_id, get_engine

log = logging.getLogger(__name__)

router = APIRouter()


async def _send_status(ws: WebSocket, engine: ProgressionEngine, relationship_id: str, party_id: str):
    outcome = await engine.get_status(relationship_id, party_id)
    await ws.send_json({
        "type": "relationship_status",
        "relationship": jsonable_encoder(engine.status(outcome)),
    })


async def _relay(ws: WebSocket, engine: ProgressionEngine, relationship_id: str, party_id: str):
    # a signal carries no state; every one triggers a fresh read
    updates = engine.feed.subscribe(relationship_id)
    try:
        async for _ in updates:
            await _send_status(ws, engine, relationship_id, party_id)
    except ProgressionError as e:
        log.warning("[WS %s] relay stopped: %s", relationship_id, e.message)
    except WebSocketDisconnect:
        log.info("[WS %s] relay stopped, socket closed", relationship_id)
    finally:
        await updates.aclose()


@router.websocket("/ws/relationships/{relationship_id}")
async def relationship_updates(
    ws: WebSocket,
    relationship_id: str,
    engine: ProgressionEngine = Depends(get_engine),
):
    await ws.accept()
    party_id = decode_party_id(
        ws.query_params.get("token") or ws.cookies.get(settings.ACCESS_TOKEN_COOKIE_NAME)
    )
    if party_id is None:
        await ws.close(code=4001)
        return

    try:
        await _send_status(ws, engine, relationship_id, party_id)
    except ProgressionError as e:
        await ws.send_json({"ok": False, "error": e.message, "details": e.details})
        await ws.close(code=4003)
        return

    if engine.feed is None:
        await ws.close(code=1000)
        return

    relay = asyncio.create_task(_relay(ws, engine, relationship_id, party_id))
    try:
        while True:
            # client pings keep the socket open; their content is ignored
            await ws.receive_text()
    except WebSocketDisconnect:
        log.info("[WS %s] party %s disconnected", relationship_id, party_id)
    finally:
        relay.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await relay

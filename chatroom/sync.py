"""WebSocket fan-out of collection changes.

Clients send ``join``, ``create``, ``update`` and ``delete`` frames. A join
is answered with a snapshot of the whole collection; every successful
mutation is broadcast to all connected clients with the stored message.
"""

import asyncio
import json
import logging
from typing import Any, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from .errors import CollectionError, NotFound
from .logging_utils import log_event
from .metrics import set_sync_clients
from .schemas import Message, MessageCreate, MessageEdit
from .storage import MessageCollection


class SyncHub:
    def __init__(self, collection: MessageCollection) -> None:
        self.collection = collection
        self._clients: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)
            set_sync_clients(len(self._clients))
        log_event(logging.INFO, "sync_connect", clients=self.client_count)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(websocket)
            set_sync_clients(len(self._clients))
        log_event(logging.INFO, "sync_disconnect", clients=self.client_count)

    async def broadcast(self, frame: dict[str, Any]) -> None:
        async with self._lock:
            clients = list(self._clients)
        results = await asyncio.gather(
            *(ws.send_json(frame) for ws in clients), return_exceptions=True
        )
        for ws, result in zip(clients, results):
            if isinstance(result, Exception):
                log_event(logging.WARNING, "sync_send_failed", type=frame.get("type"), error=str(result))
                await self.disconnect(ws)
            elif isinstance(result, BaseException):
                raise result

    # ---------- server-initiated mutations ----------

    async def created(self, message: Message) -> None:
        await self.broadcast({"type": "create", "message": message.to_wire()})

    async def updated(self, message: Message) -> None:
        await self.broadcast({"type": "update", "message": message.to_wire()})

    async def deleted(self, message_id: int) -> None:
        await self.broadcast({"type": "delete", "id": message_id})

    # ---------- client frames ----------

    async def serve(self, websocket: WebSocket) -> None:
        await self.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except ValueError as e:
                    await self._error(websocket, "frame", f"invalid JSON: {e}")
                    continue
                await self.handle(websocket, frame)
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(websocket)

    async def handle(self, websocket: WebSocket, frame: Any) -> None:
        kind = frame.get("type") if isinstance(frame, dict) else None
        try:
            if kind == "join":
                messages = await run_in_threadpool(self.collection.read_all)
                await websocket.send_json(
                    {"type": "snapshot", "messages": [m.to_wire() for m in messages]}
                )
            elif kind == "create":
                candidate = MessageCreate.model_validate(frame.get("message") or {}).to_message()
                message = await run_in_threadpool(self.collection.create, candidate)
                await self.created(message)
            elif kind == "update":
                change = MessageEdit.model_validate(frame.get("message") or {}).to_message()
                await run_in_threadpool(self.collection.update, change)
                message = await self._current(change.id)
                if message is not None:
                    await self.updated(message)
            elif kind == "delete":
                message_id = _int_or_none(frame.get("id"))
                if message_id is None:
                    await self._error(websocket, "delete", "id is required")
                    return
                await run_in_threadpool(self.collection.delete, message_id)
                await self.deleted(message_id)
            else:
                await self._error(websocket, "frame", f"unknown frame type: {kind!r}")
        except ValidationError as e:
            await self._error(websocket, kind or "frame", str(e))
        except CollectionError as e:
            log_event(logging.ERROR, "sync_operation_failed", operation=e.operation, error=e.detail)
            await self._error(websocket, e.operation, e.detail)

    async def _current(self, message_id: int) -> Optional[Message]:
        # an update of a missing id is a no-op, so there is nothing to send
        try:
            return await run_in_threadpool(self.collection.read_one, message_id)
        except NotFound:
            return None

    async def _error(self, websocket: WebSocket, operation: str, detail: str) -> None:
        await websocket.send_json({"type": "error", "operation": operation, "detail": detail})


def _int_or_none(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import (
    FastAPI,
    Depends,
    HTTPException,
    Request,
    Response,
    WebSocket,
    status,
)
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool

from .config import Settings, settings as default_settings
from .errors import CollectionError, NotFound, QueryFailed
from .logging_utils import log_event, logging_middleware
from .metrics import render_metrics
from .schemas import Message, MessageCreate, MessageUpdate
from .storage import MessageCollection
from .sync import SyncHub


# ---------- Dependencies ----------


def get_collection(request: Request) -> MessageCollection:
    return request.app.state.collection


def get_hub(request: Request) -> SyncHub:
    return request.app.state.hub


# ---------- Exception handlers ----------


async def collection_error_handler(request: Request, exc: CollectionError):
    request.state.log_extra = getattr(request.state, "log_extra", {})
    request.state.log_extra.update({"operation": exc.operation, "error": exc.detail})
    if isinstance(exc, NotFound):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": exc.detail, "operation": exc.operation},
        )
    log_event(logging.ERROR, "collection_error", operation=exc.operation, error=exc.detail)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": exc.detail, "operation": exc.operation},
    )


# ---------- App factory ----------


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # StorageUnavailable propagates and aborts startup
        with MessageCollection(settings.DATABASE_URL) as collection:
            app.state.collection = collection
            app.state.hub = SyncHub(collection)
            yield
        log_event(logging.INFO, "storage_closed")

    app = FastAPI(title="Chatroom", lifespan=lifespan)
    app.middleware("http")(logging_middleware)
    app.add_exception_handler(CollectionError, collection_error_handler)

    static_dir = Path(settings.STATIC_DIR)

    # ---------- Health ----------

    @app.get("/health/live")
    def health_live():
        return {"status": "ok"}

    @app.get("/health/ready")
    def health_ready(collection: MessageCollection = Depends(get_collection)):
        try:
            collection.ping()
        except QueryFailed as e:
            raise HTTPException(status_code=503, detail=f"DB error: {e.detail}")
        return {"status": "ok"}

    # ---------- Messages ----------

    @app.get("/messages")
    def list_messages(collection: MessageCollection = Depends(get_collection)):
        messages: List[Message] = collection.read_all()
        return {"data": [m.to_wire() for m in messages], "total": len(messages)}

    @app.get("/messages/{message_id}")
    def get_message(message_id: int, collection: MessageCollection = Depends(get_collection)):
        return collection.read_one(message_id).to_wire()

    @app.post("/messages", status_code=status.HTTP_201_CREATED)
    async def create_message(
        payload: MessageCreate,
        request: Request,
        collection: MessageCollection = Depends(get_collection),
        hub: SyncHub = Depends(get_hub),
    ):
        message = await run_in_threadpool(collection.create, payload.to_message())
        request.state.log_extra.update({"message_id": message.id, "operation": "create"})
        await hub.created(message)
        return message.to_wire()

    @app.put("/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def update_message(
        message_id: int,
        payload: MessageUpdate,
        request: Request,
        collection: MessageCollection = Depends(get_collection),
        hub: SyncHub = Depends(get_hub),
    ):
        # 204 whether or not the id exists; a missing id is a no-op
        await run_in_threadpool(collection.update, Message(id=message_id, text=payload.text))
        request.state.log_extra.update({"message_id": message_id, "operation": "update"})
        try:
            message = await run_in_threadpool(collection.read_one, message_id)
        except NotFound:
            message = None
        if message is not None:
            await hub.updated(message)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_message(
        message_id: int,
        request: Request,
        collection: MessageCollection = Depends(get_collection),
        hub: SyncHub = Depends(get_hub),
    ):
        await run_in_threadpool(collection.delete, message_id)
        request.state.log_extra.update({"message_id": message_id, "operation": "delete"})
        await hub.deleted(message_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ---------- Sync ----------

    @app.websocket("/ws")
    async def sync_endpoint(websocket: WebSocket):
        await websocket.app.state.hub.serve(websocket)

    # ---------- Metrics ----------

    @app.get("/metrics")
    def metrics():
        return PlainTextResponse(content=render_metrics(), media_type="text/plain")

    # ---------- Static page ----------

    if static_dir.is_dir():
        app.mount("/static", StaticFiles(directory=static_dir), name="static")

        @app.get("/", include_in_schema=False)
        def index():
            return FileResponse(static_dir / "index.html")

    return app


app = create_app()

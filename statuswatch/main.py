from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketDisconnect

from .config import settings
from .metrics.base import ChannelValue, Snapshot, value_to_dict
from .metrics.channel import ChannelGroup
from .services.engine import MetricsEngine

logger = logging.getLogger(__name__)

STREAM_BUFFER = 8


def create_app(engine: Optional[MetricsEngine] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        app.state.engine = engine or MetricsEngine.from_settings(settings)
        logger.info("%s started", settings.app_name)
        try:
            yield
        finally:
            await app.state.engine.shutdown()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(_routes())
    return app


def get_engine(request: Request) -> MetricsEngine:
    return request.app.state.engine


def _describe(engine: MetricsEngine, target: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "definition": target.definition.to_dict(),
        "interval_seconds": target.interval_seconds,
        "polling": engine.is_polling(target.id),
        "subscribers": engine.subscriptions.subscriber_count(target.id),
    }
    if isinstance(target, ChannelGroup):
        payload["channels"] = [
            {**channel.definition.to_dict(), "history": _history(channel.history.snapshot())}
            for channel in target.channels
        ]
    else:
        payload["history"] = _history(target.history.snapshot())
    return payload


def _history(values: Iterable[ChannelValue]) -> List[Dict[str, Any]]:
    return [value_to_dict(item) for item in values]


class IntervalUpdate(BaseModel):
    interval_seconds: float = Field(..., gt=0, description="New polling interval in seconds")


def _routes():
    router = APIRouter()

    @router.get("/", include_in_schema=False)
    async def root_redirect() -> RedirectResponse:
        return RedirectResponse("/api/metrics")

    @router.get("/api/metrics")
    async def read_metrics(engine: MetricsEngine = Depends(get_engine)) -> List[Dict[str, Any]]:
        return [_describe(engine, target) for target in engine.registry.all()]

    @router.get("/api/metrics/{metric_id}")
    async def read_metric(metric_id: str, engine: MetricsEngine = Depends(get_engine)):
        try:
            return engine.snapshot(metric_id).to_dict()
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @router.get("/api/metrics/{metric_id}/history")
    async def read_metric_history(
        metric_id: str,
        limit: int = Query(settings.history_capacity, ge=1, le=1000),
        engine: MetricsEngine = Depends(get_engine),
    ):
        try:
            if metric_id in engine.registry and isinstance(
                engine.registry.get(metric_id), ChannelGroup
            ):
                histories = engine.group_history(metric_id, limit)
                return {channel_id: _history(values) for channel_id, values in histories.items()}
            return _history(engine.history(metric_id, limit))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @router.put("/api/metrics/{metric_id}/interval")
    async def update_interval(
        metric_id: str,
        update: IntervalUpdate,
        engine: MetricsEngine = Depends(get_engine),
    ) -> Dict[str, Any]:
        try:
            engine.set_interval(metric_id, update.interval_seconds)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return _describe(engine, engine.registry.get(metric_id))

    @router.websocket("/ws/{metric_id}")
    async def stream_metric(websocket: WebSocket, metric_id: str) -> None:
        engine: MetricsEngine = websocket.app.state.engine
        if metric_id not in engine.registry:
            await websocket.close(code=4404)
            return
        await websocket.accept()

        queue: "asyncio.Queue[Snapshot]" = asyncio.Queue(maxsize=STREAM_BUFFER)

        def deliver(snapshot: Snapshot) -> None:
            # slow clients lose the oldest snapshots
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)

        engine.subscribe(metric_id, deliver)
        sender = asyncio.create_task(_forward(websocket, queue), name=f"ws-{metric_id}")
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        finally:
            engine.unsubscribe(metric_id, deliver)
            sender.cancel()
            try:
                await sender
            except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                pass

    return router


async def _forward(websocket: WebSocket, queue: "asyncio.Queue[Snapshot]") -> None:
    while True:
        snapshot = await queue.get()
        await websocket.send_json(snapshot.to_dict())


app = create_app()

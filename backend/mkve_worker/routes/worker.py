"""
Worker HTTP and WebSocket endpoints.

HTTP endpoints are stateless helpers around the classifier and estimator.
The WebSocket endpoint carries the worker protocol itself: one session per
connection, JSON text frames in both directions.

No job state is shared between connections.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field

from ..jobs.arguments import classify
from ..jobs.errors import ClassificationError
from ..jobs.models import OperationKind
from ..protocol.channel import Channel, ChannelClosedError
from ..protocol.messages import MessageValidationError, _Message, parse_inbound
from ..resources.estimator import estimate
from ..session import WorkerSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/worker", tags=["worker"])
health_router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: str


class ClassifyRequest(BaseModel):
    """Request body for classification."""

    model_config = ConfigDict(extra="forbid")

    args: List[str]


class EstimateRequest(BaseModel):
    """Request body for a budget estimate."""

    model_config = ConfigDict(extra="forbid")

    input_size_bytes: int = Field(ge=0)
    operation_kind: OperationKind
    ceiling_mb: Optional[int] = Field(default=None, gt=0)


class WebSocketChannel(Channel):
    """
    Channel over a FastAPI WebSocket.

    Sends are serialized with a lock so concurrent jobs never interleave
    frames. A disconnect in either direction closes the channel.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False

    async def send(self, message: _Message) -> None:
        if self._closed:
            raise ChannelClosedError("WebSocket is closed")
        async with self._send_lock:
            try:
                await self.websocket.send_json(message.to_wire())
            except (WebSocketDisconnect, RuntimeError) as e:
                self._closed = True
                raise ChannelClosedError(f"WebSocket send failed: {e}") from e

    async def receive(self) -> _Message:
        if self._closed:
            raise ChannelClosedError("WebSocket is closed")
        try:
            text = await self.websocket.receive_text()
        except WebSocketDisconnect as e:
            self._closed = True
            raise ChannelClosedError(f"WebSocket disconnected ({e.code})") from e

        try:
            payload = json.loads(text)
        except ValueError as e:
            raise MessageValidationError(f"Invalid JSON: {e}", text) from e
        return parse_inbound(payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.websocket.close()
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"[SESSION] WebSocket already closed: {e}")


@health_router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.

    Returns:
        Simple status indicator
    """
    return HealthResponse(status="ok")


@router.get("/info")
async def worker_info(request: Request) -> Dict[str, Any]:
    """
    Worker version, engine and configuration.

    Returns:
        Version, features, engine name and the full WorkerConfig
    """
    config = request.app.state.worker_config
    engine = request.app.state.engine
    return {
        "version": config.version,
        "engine": engine.name,
        "engine_version": engine.version,
        "features": list(config.features),
        "memory_allocated": config.memory_allocated,
        "config": config.to_dict(),
    }


@router.post("/classify")
async def classify_arguments(body: ClassifyRequest, request: Request) -> Dict[str, Any]:
    """
    Classify an argument list without running anything.

    Returns:
        The JobDescription

    Raises:
        HTTPException 400: If the input or output path is missing
    """
    try:
        description = classify(body.args, request.app.state.worker_config)
    except ClassificationError as e:
        raise HTTPException(
            status_code=400,
            detail={"reason": e.reason.value, "message": str(e)},
        )
    return description.model_dump(mode="json")


@router.post("/estimate")
async def estimate_budget(body: EstimateRequest, request: Request) -> Dict[str, Any]:
    """
    Compute the admission budget for an input size and operation kind.

    Returns:
        The ResourceBudget
    """
    budget = estimate(
        body.input_size_bytes,
        body.operation_kind,
        ceiling_mb=body.ceiling_mb,
        config=request.app.state.worker_config,
    )
    return budget.model_dump(mode="json")


@router.websocket("/ws")
async def worker_socket(websocket: WebSocket):
    """
    Run one worker session over this connection.

    The first frame sent is `initialized`; every frame after that follows
    the worker protocol.
    """
    await websocket.accept()
    channel = WebSocketChannel(websocket)
    session = WorkerSession(
        channel,
        websocket.app.state.engine,
        websocket.app.state.worker_config,
    )
    logger.info("[SESSION] WebSocket connected")
    try:
        await session.serve()
    finally:
        await channel.close()
        logger.info("[SESSION] WebSocket session ended")

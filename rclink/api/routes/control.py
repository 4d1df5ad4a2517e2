"""
Control API Routes
Operator input (HTTP and WebSocket) and link status endpoints
"""

import json
import logging
import math

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)

router = APIRouter()

# Service instances (injected from main.py)
_control_service = None
_link_service = None


def set_control_service(service):
    """Inject control input service instance."""
    global _control_service
    _control_service = service


def set_link_service(service):
    """Inject RC override link instance."""
    global _link_service
    _link_service = service


class ControlSample(BaseModel):
    """One operator sample, in the link's input convention."""

    throttle: float
    steering: float

    @field_validator("throttle", "steering")
    @classmethod
    def validate_finite(cls, v):
        if not math.isfinite(v):
            raise ValueError("Control values must be finite numbers")
        return v


def _require_control():
    if _control_service is None:
        raise HTTPException(status_code=503, detail="Control service not initialized")
    return _control_service


@router.get("/status")
async def get_status():
    """Last operator values, in the shape the browser client expects."""
    return _require_control().get_status()


@router.post("/api/control")
async def post_control(sample: ControlSample):
    """Apply a single control sample."""
    applied = _require_control().apply(sample.throttle, sample.steering)
    return {"success": True, **applied}


@router.get("/api/link/status")
async def get_link_status():
    """RC override link state, sequence counter and channel values."""
    if _link_service is None:
        raise HTTPException(status_code=503, detail="Link not initialized")
    return _link_service.get_status()


@router.websocket("/ws/control")
async def control_socket(websocket: WebSocket):
    """
    Streaming control channel.

    Each text message is a JSON object ``{"throttle": .., "steering": ..}``.
    Invalid messages get an error reply; the socket stays open.
    """
    await websocket.accept()
    logger.info("Control socket connected")

    try:
        while True:
            raw = await websocket.receive_text()
            service = _control_service
            if service is None:
                await websocket.send_json({"type": "error", "detail": "Control service not initialized"})
                continue

            try:
                sample = ControlSample(**json.loads(raw))
            except (ValueError, TypeError, ValidationError) as e:
                await websocket.send_json({"type": "error", "detail": str(e)})
                continue

            service.apply(sample.throttle, sample.steering)

    except WebSocketDisconnect:
        logger.info("Control socket disconnected")

"""Pydantic schemas for request/response models."""

from relay.schemas.message import (
    AdmitResponse,
    MessageOut,
    QueueStatusOut,
    ResetResponse,
    SendMessageRequest,
)

__all__ = [
    "AdmitResponse",
    "MessageOut",
    "QueueStatusOut",
    "ResetResponse",
    "SendMessageRequest",
]

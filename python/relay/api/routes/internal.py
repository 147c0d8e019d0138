"""Operator routes for conversation coordination."""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from relay.api.deps import get_db, get_request_id_dep
from relay.responses import success_response
from relay.schemas.message import ResetResponse
from relay.services import admission
from relay.services.conversation_state import get_state_machine

router = APIRouter(prefix="/internal")


@router.post("/conversations/{conversation_id}/reset")
def reset_conversation(
    conversation_id: str,
    db: Annotated[Session, Depends(get_db)],
    request_id: Annotated[str | None, Depends(get_request_id_dep)],
) -> dict:
    """Force a stuck conversation idle and start its next queued message."""
    result = admission.reset_conversation(db, conversation_id, request_id=request_id)
    return success_response(ResetResponse(**result).model_dump(mode="json"))


@router.get("/conversations/stats")
def conversation_stats() -> dict:
    """Counts of conversations by phase and total queued messages."""
    return success_response(get_state_machine().stats())

"""Conversation message routes.

Routes are transport-only and call exactly one service function.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from relay.api.deps import get_db, get_request_id_dep
from relay.responses import success_response
from relay.schemas.message import AdmitResponse, QueueStatusOut, SendMessageRequest
from relay.services import admission
from relay.services import conversation_store as store
from relay.services.conversation_state import MessageEnvelope, get_state_machine

router = APIRouter()


@router.post("/conversations/{conversation_id}/messages", status_code=202)
def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    db: Annotated[Session, Depends(get_db)],
    request_id: Annotated[str | None, Depends(get_request_id_dep)],
) -> JSONResponse:
    """Admit a user message.

    Returns immediately: processed_now=True means generation started,
    otherwise queue_position says how many messages are ahead.
    """
    envelope = MessageEnvelope(
        message_id=body.message_id,
        user_id=body.user_id,
        character_id=body.character_id,
        received_at=body.received_at or admission.received_now(),
        type=body.type,
        content=body.content,
        payload=body.payload,
        temp_id=body.temp_id,
        is_premium=body.is_premium,
    )
    result = admission.admit(db, conversation_id, envelope, request_id=request_id)
    out = AdmitResponse(**result.as_dict())
    return JSONResponse(status_code=202, content=success_response(out.model_dump(mode="json")))


@router.get("/conversations/{conversation_id}/messages")
def list_messages(
    conversation_id: str,
    db: Annotated[Session, Depends(get_db)],
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
) -> dict:
    """Most recent messages, oldest first, including failed ones."""
    store.get_conversation_or_404(db, conversation_id)
    messages = store.get_recent_messages(db, conversation_id, limit=limit, include_failed=True)
    return success_response(
        [store.message_to_out(m).model_dump(mode="json") for m in messages]
    )


@router.get("/conversations/{conversation_id}/queue")
def get_queue_status(conversation_id: str) -> dict:
    """Coordination state: phase, active message, queued messages."""
    status = get_state_machine().get_status(conversation_id)
    return success_response(QueueStatusOut(**status.as_dict()).model_dump(mode="json"))


@router.post("/conversations/{conversation_id}/messages/{message_id}/retry", status_code=202)
def retry_message(
    conversation_id: str,
    message_id: str,
    db: Annotated[Session, Depends(get_db)],
    request_id: Annotated[str | None, Depends(get_request_id_dep)],
) -> JSONResponse:
    """Re-admit a user message whose generation failed."""
    result = admission.retry_failed_message(
        db, conversation_id, message_id, request_id=request_id
    )
    out = AdmitResponse(**result.as_dict())
    return JSONResponse(status_code=202, content=success_response(out.model_dump(mode="json")))

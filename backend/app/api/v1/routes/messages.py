"""Message routes - send, read, edit, forward and delete messages."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_current_user, get_message_manager
from app.models.message import Message
from app.models.user import User
from app.policies.attribution import resolve_attribution
from app.schemas.messages import (
    AttributionRead,
    DeleteMessageRequest,
    DeliveryStatusRequest,
    EditMessageRequest,
    ForwardMessageRequest,
    MessageListResponse,
    MessageRead,
    ReactionRequest,
    ScreenshotRequest,
    SendMessageRequest,
)
from app.services.message_lifecycle import MessageLifecycleManager

router = APIRouter(prefix="/messages", tags=["messages"])


# ============================================================================
# HELPERS
# ============================================================================


def _read(message: Message) -> MessageRead:
    data = MessageRead.model_validate(message)
    attribution = resolve_attribution(message)
    if attribution is not None:
        data.attribution = AttributionRead(**asdict(attribution))
    return data


# ============================================================================
# ENDPOINTS
# ============================================================================


@router.post("/send", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
def send_message(
    send_request: SendMessageRequest,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> MessageRead:
    message = manager.send_message(
        current_user.id,
        send_request.conversation_id,
        content=send_request.content,
        message_type=send_request.message_type,
        media=send_request.media,
        formatting=send_request.formatting,
        reply_to_id=send_request.reply_to_id,
        identity_id=send_request.identity_id,
        disappear_after_seconds=send_request.disappear_after_seconds,
    )
    return _read(message)


@router.get("/conversation/{conversation_id}", response_model=MessageListResponse)
def get_conversation_messages(
    conversation_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> MessageListResponse:
    messages = manager.get_messages(current_user.id, conversation_id, limit=limit, skip=skip)
    return MessageListResponse(
        messages=[_read(m) for m in messages], count=len(messages), limit=limit, skip=skip
    )


@router.get("/unread", response_model=MessageListResponse)
def get_unread_messages(
    conversation_id: int | None = Query(None),
    limit: int = Query(50, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> MessageListResponse:
    messages = manager.get_unread(current_user.id, conversation_id=conversation_id, limit=limit)
    return MessageListResponse(
        messages=[_read(m) for m in messages], count=len(messages), limit=limit, skip=0
    )


@router.get("/{message_id}", response_model=MessageRead)
def get_message(
    message_id: int,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> MessageRead:
    message, _ = manager.get_message(current_user.id, message_id)
    return _read(message)


@router.post("/{message_id}/read", response_model=MessageRead)
def mark_read(
    message_id: int,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> MessageRead:
    return _read(manager.mark_read(current_user.id, message_id))


@router.put("/{message_id}/status", response_model=MessageRead)
def update_delivery_status(
    message_id: int,
    status_request: DeliveryStatusRequest,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> MessageRead:
    message = manager.update_delivery_status(current_user.id, message_id, status_request.status)
    return _read(message)


@router.patch("/{message_id}", response_model=MessageRead)
def edit_message(
    message_id: int,
    edit_request: EditMessageRequest,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> MessageRead:
    message = manager.edit_message(
        current_user.id, message_id, edit_request.content, reason=edit_request.reason
    )
    return _read(message)


@router.get("/{message_id}/history")
def get_edit_history(
    message_id: int,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> list[dict]:
    return [
        {"content": edit.previous_content, "reason": edit.reason, "edited_at": edit.edited_at}
        for edit in manager.edit_history(current_user.id, message_id)
    ]


@router.put("/{message_id}/reaction")
def add_reaction(
    message_id: int,
    reaction_request: ReactionRequest,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> dict:
    reaction = manager.add_reaction(current_user.id, message_id, reaction_request.emoji)
    return {"message_id": message_id, "emoji": reaction.emoji, "reacted_at": reaction.reacted_at}


@router.get("/{message_id}/reactions")
def list_reactions(
    message_id: int,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> list[dict]:
    return [
        {"user_id": r.user_id, "emoji": r.emoji, "reacted_at": r.reacted_at}
        for r in manager.list_reactions(current_user.id, message_id)
    ]


@router.get("/{message_id}/receipts")
def get_read_receipts(
    message_id: int,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> list[dict]:
    return [
        {"user_id": r.user_id, "read_at": r.read_at}
        for r in manager.read_receipts(current_user.id, message_id)
    ]


@router.delete("/{message_id}/reaction")
def remove_reaction(
    message_id: int,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> dict:
    return {"removed": manager.remove_reaction(current_user.id, message_id)}


@router.put("/{message_id}/pin", response_model=MessageRead)
def pin_message(
    message_id: int,
    pin: bool = Query(True),
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> MessageRead:
    return _read(manager.pin_message(current_user.id, message_id, pin=pin))


@router.post("/{message_id}/delete")
def delete_message(
    message_id: int,
    delete_request: DeleteMessageRequest,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> dict:
    if delete_request.for_everyone:
        manager.delete_for_everyone(current_user.id, message_id, reason=delete_request.reason)
    else:
        manager.delete_for_me(current_user.id, message_id)
    return {"success": True, "for_everyone": delete_request.for_everyone}


@router.post("/{message_id}/forward", response_model=list[MessageRead])
def forward_message(
    message_id: int,
    forward_request: ForwardMessageRequest,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> list[MessageRead]:
    forwarded = manager.forward_message(
        current_user.id,
        message_id,
        forward_request.target_conversation_ids,
        attribution=forward_request.attribution,
        identity_id=forward_request.identity_id,
        comment=forward_request.comment,
    )
    return [_read(m) for m in forwarded]


@router.get("/{message_id}/attribution", response_model=AttributionRead | None)
def get_attribution(
    message_id: int,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
):
    attribution = manager.get_attribution(current_user.id, message_id)
    return AttributionRead(**asdict(attribution)) if attribution else None


@router.post("/{message_id}/screenshot")
def report_screenshot(
    message_id: int,
    screenshot_request: ScreenshotRequest,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> dict:
    return manager.report_screenshot(current_user.id, message_id, screenshot_request.method)


@router.get("/{message_id}/screenshots")
def get_screenshot_log(
    message_id: int,
    current_user: User = Depends(get_current_user),
    manager: MessageLifecycleManager = Depends(get_message_manager),
) -> list[dict]:
    return [
        {"user_id": entry.user_id, "method": entry.method, "taken_at": entry.taken_at}
        for entry in manager.screenshot_log(current_user.id, message_id)
    ]

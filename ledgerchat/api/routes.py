"""
API Routes definition.
Local HTTP surface used by the rendering layer: messages, failed-send
retries, groups and membership, presence and sync status.
"""

import logging
from typing import Any, Dict, List, Optional

import pydantic
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ledgerchat.api.dependencies import get_session
from ledgerchat.core.errors import (
    AuthorizationError,
    ChatError,
    InvariantViolation,
    LedgerUnavailable,
    NotFound,
    SubmissionError,
    ValidationError,
)
from ledgerchat.core.models import ConversationTarget, Group, Message, PendingRetry
from ledgerchat.services.send_pipeline import SendAttempt
from ledgerchat.services.session import ChatSessionService, chat_service
from ledgerchat.services.wallet import current_wallet_provider

logger = logging.getLogger(__name__)

router = APIRouter()


class SendMessageRequest(BaseModel):
    """Payload for sending a message to a recipient or a group."""

    content: str
    recipient: Optional[str] = None
    group_id: Optional[str] = None
    encrypted: bool = False


class CreateGroupRequest(BaseModel):
    name: str
    participants: List[str]


class AddMemberRequest(BaseModel):
    identity: str


class SelectGroupRequest(BaseModel):
    group_id: Optional[str] = None


class ConnectRequest(BaseModel):
    """Base58 public key of the wallet to connect."""

    public_key: str


def _http_error(error: ChatError) -> HTTPException:
    """Maps the error taxonomy onto HTTP status codes."""
    if isinstance(error, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, AuthorizationError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, NotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, InvariantViolation):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, (SubmissionError, LedgerUnavailable)):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if isinstance(error, SubmissionError) and error.fingerprint:
        return HTTPException(status_code=code, detail={"error": str(error), "fingerprint": error.fingerprint})
    return HTTPException(status_code=code, detail=str(error))


def _attempt_payload(attempt: SendAttempt) -> Dict[str, Any]:
    return {"state": attempt.state.value, "signature": attempt.signature, "fingerprint": attempt.fingerprint}


# === PUBLIC ROUTES ===


@router.post("/connect")
async def connect_wallet(payload: ConnectRequest) -> Dict[str, Any]:
    """
    Connect endpoint.
    1. Resolves the wallet via WalletProvider
    2. Initializes the chat session for it
    """
    try:
        wallet = await current_wallet_provider.connect(payload.public_key)
    except ChatError as e:
        raise _http_error(e) from e

    if chat_service.is_initialized():
        if chat_service.identity != wallet.public_key:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Session is already connected to {chat_service.identity}",
            )
    else:
        try:
            await chat_service.initialize(wallet)
        # pylint: disable=broad-exception-caught
        except Exception as e:
            logger.error("Initialization failed: %s", e)

            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Session initialization failed: {str(e)}",
            ) from e

    return {"wallet": wallet.public_key, "initialized": True}


@router.post("/disconnect")
async def disconnect_wallet() -> Dict[str, Any]:
    """Stops syncing and forgets the connected wallet."""
    await chat_service.shutdown()
    return {"wallet": None, "initialized": False}


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Returns the client status"""
    return {
        "status": "online",
        "initialized": chat_service.is_initialized(),
        "wallet": chat_service.identity,
    }


# === Protected routes ===


@router.get("/messages", response_model=List[Message])
async def get_messages(session: ChatSessionService = Depends(get_session)) -> List[Message]:
    """Re-lists the messages of the selected scope. Use POST /select to change it."""
    return await session.relist()


@router.post("/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    payload: SendMessageRequest, session: ChatSessionService = Depends(get_session)
) -> Dict[str, Any]:
    try:
        target = ConversationTarget(recipient=payload.recipient, group_id=payload.group_id)
    except pydantic.ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    try:
        attempt = await session.send(target, payload.content, payload.encrypted)
    except ChatError as e:
        raise _http_error(e) from e
    return _attempt_payload(attempt)


@router.get("/retries", response_model=List[PendingRetry])
async def get_retries(session: ChatSessionService = Depends(get_session)) -> List[PendingRetry]:
    """Failed sends awaiting a retry or a dismissal."""
    return session.pending()


@router.post("/retries/{fingerprint}")
async def retry_message(fingerprint: str, session: ChatSessionService = Depends(get_session)) -> Dict[str, Any]:
    try:
        attempt = await session.retry(fingerprint)
    except ChatError as e:
        raise _http_error(e) from e
    return _attempt_payload(attempt)


@router.delete("/retries/{fingerprint}", response_model=PendingRetry)
async def dismiss_message(fingerprint: str, session: ChatSessionService = Depends(get_session)) -> PendingRetry:
    try:
        return session.dismiss(fingerprint)
    except ChatError as e:
        raise _http_error(e) from e


@router.get("/groups", response_model=List[Group])
async def get_groups(session: ChatSessionService = Depends(get_session)) -> List[Group]:
    """Groups the connected wallet participates in."""
    return await session.load_groups()


@router.post("/groups", response_model=Group, status_code=status.HTTP_201_CREATED)
async def create_group(payload: CreateGroupRequest, session: ChatSessionService = Depends(get_session)) -> Group:
    try:
        return await session.create_group(payload.name, payload.participants)
    except ChatError as e:
        raise _http_error(e) from e


@router.get("/groups/{group_id}", response_model=Group)
async def get_group(group_id: str, session: ChatSessionService = Depends(get_session)) -> Group:
    try:
        group = await session.get_group(group_id)
    except ChatError as e:
        raise _http_error(e) from e
    if group is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Group {group_id} not found")
    return group


@router.post("/groups/{group_id}/members", response_model=Group)
async def add_member(
    group_id: str, payload: AddMemberRequest, session: ChatSessionService = Depends(get_session)
) -> Group:
    try:
        return await session.add_member(group_id, payload.identity)
    except ChatError as e:
        raise _http_error(e) from e


@router.delete("/groups/{group_id}/members/{identity}", response_model=Group)
async def remove_member(
    group_id: str, identity: str, session: ChatSessionService = Depends(get_session)
) -> Group:
    try:
        return await session.remove_member(group_id, identity)
    except ChatError as e:
        raise _http_error(e) from e


@router.post("/select", response_model=List[Message])
async def select_group(
    payload: SelectGroupRequest, session: ChatSessionService = Depends(get_session)
) -> List[Message]:
    """Switches the subscribed conversation scope."""
    return await session.select_group(payload.group_id)


@router.get("/presence/{identity}")
async def get_presence(identity: str, session: ChatSessionService = Depends(get_session)) -> Dict[str, Any]:
    return {"identity": identity, "online": session.is_online(identity)}


@router.get("/sync")
async def get_sync_status(session: ChatSessionService = Depends(get_session)) -> Dict[str, Any]:
    """Push channel state; when disconnected the client is polling only."""
    return {
        "state": session.sync.state.value,
        "selected_group": session.selected_group,
        "notice": session.sync.last_error,
        "pending_retries": len(session.pending()),
    }

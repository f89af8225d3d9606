"""
FastAPI dependencies for session state validation.
"""

from fastapi import HTTPException, status

from ledgerchat.services.session import ChatSessionService, chat_service


async def get_session() -> ChatSessionService:
    """
    Dependency that checks if a wallet is connected.
    Returns the active chat session.
    """
    if not chat_service.is_initialized():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="No wallet connected. Please connect your wallet first."
        )
    return chat_service

"""
Session API endpoints.

The ``/api/session`` routes operate on the caller's own session through its
cookie. The administrative route removes any session by id and is only mounted
when an admin token is configured; it is rate limited like the other sensitive
endpoints.
"""

import hmac
import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from sqlite_sessions.core.limiter import admin_rate_limit, limiter
from sqlite_sessions.core.utils.session_store import Session
from sqlite_sessions.manager import SessionsManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/session", tags=["sessions"])
admin_router = APIRouter(prefix="/api/sessions", tags=["session administration"])


class SessionView(BaseModel):
    """Current session as returned to the client."""

    is_new: bool
    values: dict[str, Any]
    expires_at: Optional[datetime] = None


class SessionUpdateRequest(BaseModel):
    values: dict[str, Any] = Field(
        default_factory=dict,
        description="Values merged into the session.",
    )
    remove: list[str] = Field(
        default_factory=list,
        description="Keys removed from the session.",
    )
    max_age: Optional[int] = Field(
        default=None,
        description="Lifetime override in seconds; zero or less ends the session.",
    )


class DeleteResponse(BaseModel):
    success: bool


def get_sessions_manager(request: Request) -> SessionsManager:
    return request.app.state.sessions_manager


def get_current_session(
    request: Request,
    manager: SessionsManager = Depends(get_sessions_manager),
) -> Session:
    return manager.get_session(request)


def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    expected = request.app.state.settings.admin_token
    if (
        not expected
        or not x_admin_token
        or not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8"))
    ):
        logger.warning("Rejected administrative session request: invalid token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid administrative token",
        )


@router.get("", response_model=SessionView)
def read_session(session: Session = Depends(get_current_session)) -> SessionView:
    return _to_view(session)


@router.put("", response_model=SessionView)
def update_session(
    payload: SessionUpdateRequest,
    response: Response,
    session: Session = Depends(get_current_session),
    manager: SessionsManager = Depends(get_sessions_manager),
) -> SessionView:
    session.values.update(payload.values)
    for key in payload.remove:
        session.values.pop(key, None)
    if payload.max_age is not None:
        session.max_age = payload.max_age

    manager.save_session(response, session)
    return _to_view(session)


@router.delete("", response_model=DeleteResponse)
def end_session(
    response: Response,
    session: Session = Depends(get_current_session),
    manager: SessionsManager = Depends(get_sessions_manager),
) -> DeleteResponse:
    manager.delete_session(response, session)
    return DeleteResponse(success=True)


@admin_router.delete(
    "/{session_id}",
    response_model=DeleteResponse,
    dependencies=[Depends(require_admin_token)],
)
@limiter.limit(admin_rate_limit)
def delete_session_by_id(
    request: Request,
    session_id: str,
    manager: SessionsManager = Depends(get_sessions_manager),
) -> DeleteResponse:
    """
    Terminate a session without its cookie, e.g. to log a user out everywhere.

    Raises:
        SessionNotFoundError: Mapped to HTTP 404 by the application
    """
    manager.delete_session_by_id(session_id)
    return DeleteResponse(success=True)


def _to_view(session: Session) -> SessionView:
    return SessionView(
        is_new=session.is_new,
        values=session.values,
        expires_at=session.expires_at,
    )

"""
Session identity helpers shared by the HTTP and WebSocket routes.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import HTTPException, Request, WebSocket

from image_api.schemas import EmailEntry, UserProfile

SESSION_USER_KEY = "user"
SESSION_STATE_KEY = "oauth_state"


def profile_from_userinfo(info: dict[str, Any]) -> UserProfile:
    """Map a Google userinfo payload onto the session user shape."""
    email = info.get("email")
    return UserProfile(
        id=str(info["id"]),
        displayName=info.get("name") or email or str(info["id"]),
        emails=[EmailEntry(value=email)] if email else None,
    )


def _user_from_session(session: dict) -> Optional[UserProfile]:
    data = session.get(SESSION_USER_KEY)
    if not isinstance(data, dict) or not data.get("id"):
        return None
    return UserProfile.model_validate(data)


def login_session(request: Request, user: UserProfile) -> None:
    request.session.pop(SESSION_STATE_KEY, None)
    request.session[SESSION_USER_KEY] = user.model_dump(exclude_none=True)


def get_current_user(request: Request) -> UserProfile:
    """Dependency: the signed-in user, or 401."""
    user = _user_from_session(request.session)
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def session_user_from_websocket(websocket: WebSocket) -> Optional[UserProfile]:
    return _user_from_session(websocket.session)

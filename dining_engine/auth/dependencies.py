from __future__ import annotations

from fastapi import HTTPException, Request


def _session_user(request: Request) -> dict:
    user = request.session.get("user")
    if not user or not user.get("user_id"):
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_user(request: Request) -> dict:
    """Raise 401 unless a user is logged in."""
    return _session_user(request)


def require_admin(request: Request) -> dict:
    """Raise 401 if not logged in, 403 if not admin."""
    user = _session_user(request)
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user

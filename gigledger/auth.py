"""Caller identity and admin authentication.

User identity is established upstream by the identity gateway, which forwards
the authenticated user as `X-User-Id`. Admin routes use a shared bearer key.
"""

from __future__ import annotations

import secrets

from fastapi import Depends, HTTPException, Request

USER_HEADER = "X-User-Id"


async def get_current_user(request: Request) -> str:
    user_id = request.headers.get(USER_HEADER, "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail=f"Missing {USER_HEADER} header")
    return user_id


AuthUser = Depends(get_current_user)


async def verify_admin_key(request: Request) -> None:
    from gigledger.config import settings

    if settings.admin_key is None:
        raise HTTPException(status_code=501, detail="Admin API not configured")
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if not secrets.compare_digest(auth[7:], settings.admin_key):
        raise HTTPException(status_code=403, detail="Invalid admin key")

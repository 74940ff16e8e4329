"""Session-aware dependencies for member-facing membership APIs."""

from __future__ import annotations

from uuid import UUID

from fastapi import Header, HTTPException, status


async def require_member_session(
    session_user: str | None = Header(None, alias="X-Session-User"),
) -> UUID:
    """Resolve the authenticated owner id forwarded by the web tier."""

    if not session_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session user context",
        )

    try:
        return UUID(session_user)
    except ValueError as error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid session user identifier",
        ) from error

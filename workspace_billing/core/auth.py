"""
Caller identity for billing routes.

Authentication is owned by the upstream platform; it forwards the verified
user id in the X-User-Id header.
"""
from typing import Optional

from fastapi import Header, Request

from workspace_billing.core.errors import UnauthorizedError


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Verified user id from the auth layer"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. request.state.user_id (set by an auth middleware, if installed)
    2. X-User-Id header
    3. 401 Unauthorized
    """
    user_id = getattr(request.state, "user_id", None) or x_user_id
    if user_id and user_id.strip():
        return user_id.strip()
    raise UnauthorizedError("Missing X-User-Id header")

# backend/escrowbook/api/dependencies/auth.py
"""
Caller identity dependencies.

Authentication happens upstream; the gateway forwards the resolved caller as
X-Actor-Id and X-Actor-Role headers. Only human roles may call the API; the
scheduler and ledger roles are reserved for in-process callers.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from ...core.actor import Actor
from ...core.enums import ActorRole

logger = logging.getLogger(__name__)

API_ROLES = (ActorRole.CUSTOMER, ActorRole.PROVIDER, ActorRole.ADMIN)


def get_current_actor(
    x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id"),
    x_actor_role: Optional[str] = Header(None, alias="X-Actor-Role"),
) -> Actor:
    """
    Resolve the calling actor from gateway headers.

    Raises:
        HTTPException: 401 when the caller is not identified, 403 when the
            role may not use the API
    """
    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Caller identity headers are missing", "code": "UNAUTHENTICATED"},
        )

    try:
        role = ActorRole(x_actor_role.strip().lower())
    except ValueError:
        role = None

    if role not in API_ROLES:
        logger.warning("Rejected API call with role %r", x_actor_role)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": f"Role {x_actor_role!r} cannot use this API", "code": "FORBIDDEN_ROLE"},
        )

    return Actor(role, x_actor_id.strip())

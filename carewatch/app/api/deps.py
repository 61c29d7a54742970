"""
FastAPI dependencies: container access, caller identity, internal credential.

Caller identity is resolved upstream by the auth gateway and forwarded as
`X-User-Id` / `X-User-Role` headers. The call agent authenticates with a
shared key in `X-Internal-Api-Key`.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, Request

from carewatch.app.alerts.models import Actor, ReceiverRole
from carewatch.app.container import AlertContainer
from carewatch.app.core.errors import AuthenticationError

logger = logging.getLogger(__name__)

_warned_open_internal = False


def get_container(request: Request) -> AlertContainer:
    return request.app.state.container


def get_actor(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> Actor:
    if not x_user_id or not x_user_role:
        raise AuthenticationError("Missing caller identity")
    try:
        user_id = int(x_user_id)
        role = ReceiverRole(x_user_role.strip().upper())
    except ValueError:
        raise AuthenticationError("Malformed caller identity")
    return Actor(user_id=user_id, role=role)


def require_internal_key(
    request: Request,
    container: AlertContainer = Depends(get_container),
) -> None:
    """Unset key: open outside production (warned once), closed in production."""
    global _warned_open_internal
    config = container.config
    expected = config.INTERNAL_API_KEY
    if not expected:
        if config.is_production:
            raise AuthenticationError("Internal API key not configured")
        if not _warned_open_internal:
            logger.warning("INTERNAL_API_KEY unset, internal endpoints are open (%s)", config.ENVIRONMENT)
            _warned_open_internal = True
        return
    supplied = request.headers.get(config.INTERNAL_API_KEY_HEADER)
    if not supplied or not secrets.compare_digest(supplied, expected):
        logger.warning("Rejected internal call to %s", request.url.path)
        raise AuthenticationError("Invalid internal API key")

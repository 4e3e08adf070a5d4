from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from sitenotify.core.errors import AccessDeniedError
from sitenotify.services.authz import AccessContext, Capability, parse_role
from sitenotify.services.engine import NotificationEngine, get_engine


USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"
COMPANY_ID_HEADER = "X-Company-Id"


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTHORIZATION_ERROR", "message": message},
    )


def get_notification_engine() -> NotificationEngine:
    return get_engine()


async def get_access_context(request: Request) -> AccessContext:
    # Identity comes from the upstream gateway; resolve the role once per request.
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    role_header = (request.headers.get(USER_ROLE_HEADER) or "").strip()
    if not user_id or not role_header:
        raise _auth_error(f"Missing {USER_ID_HEADER} or {USER_ROLE_HEADER} header")
    try:
        role = parse_role(role_header)
    except AccessDeniedError as exc:
        raise _forbidden_error(str(exc)) from exc
    company_id = (request.headers.get(COMPANY_ID_HEADER) or "").strip() or None
    return AccessContext(user_id=user_id, role=role, company_id=company_id)


def require_capability(capability: Capability):
    # Dependency factory to enforce capabilities at the route level.
    async def _dependency(actor: AccessContext = Depends(get_access_context)) -> AccessContext:
        if not actor.has(capability):
            raise _forbidden_error(f"role {actor.role.value} lacks {capability.value}")
        return actor

    return _dependency

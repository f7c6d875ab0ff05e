"""Identity resolution and gateway key check for the api worker.

The upstream identity provider forwards who is calling as headers:

- `X-Identity-Id`: stable identity id (equals the judge document id)
- `X-Identity-Email`: email of the account
- `X-Identity-Role`: role claim; only a hint, the judges collection decides

Configuration via environment variables:

- `API_KEY`: shared secret between the gateway and this service. When set,
  any request that carries identity headers must also carry the key, so
  identities cannot be forged by calling the service directly. When unset,
  identity headers are trusted as-is (local development).

The key can be sent as:
- `X-API-Key: <key>` header
- `Authorization: Bearer <key>` header
- `?api_key=<key>` query parameter
"""
from __future__ import annotations

import logging
import os
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import HTTPConnection, Request
from starlette.responses import JSONResponse

from judging_node.db.repositories import DBJudgeRepository
from judging_node.entities.identity import ANONYMOUS, Identity
from judging_node.entities.roster import Role
from judging_node.errors import AuthorizationDenied, store_errors

logger = logging.getLogger(__name__)

IDENTITY_HEADER = "x-identity-id"
EMAIL_HEADER = "x-identity-email"
ROLE_HEADER = "x-identity-role"


class GatewayKeyMiddleware(BaseHTTPMiddleware):
    """Reject identity-bearing requests that did not come through the gateway.

    Inactive when `api_key` is None (no API_KEY env var set).
    """

    def __init__(self, app, api_key: str | None = None):
        super().__init__(app)
        self.api_key = api_key

    async def dispatch(self, request: Request, call_next: Callable):
        if not self.api_key:
            return await call_next(request)

        if request.headers.get(IDENTITY_HEADER) and not check_key(request, self.api_key):
            return JSONResponse(
                status_code=401,
                content={"error": "gateway_key_required", "detail": "API key required"},
            )
        return await call_next(request)


def check_key(connection: HTTPConnection, api_key: str) -> bool:
    """Extract the gateway key from a request or websocket and validate."""
    key = connection.headers.get("x-api-key")
    if key:
        return key == api_key

    auth = connection.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() == api_key

    key = connection.query_params.get("api_key")
    if key:
        return key == api_key

    return False


def resolve_identity(
    judge_repository: DBJudgeRepository,
    identity_id: str | None,
    email: str = "",
    role_claim: str | None = None,
) -> Identity:
    """Resolve the caller's role from the judges collection.

    Unknown identities are audience. A role claim that disagrees with the
    stored document is ignored.
    """
    if not identity_id:
        return ANONYMOUS
    with store_errors(judge_repository, operation="identity read"):
        judge = judge_repository.fetch(identity_id)
    role = judge.role if judge is not None else Role.AUDIENCE
    if role_claim and role_claim != role.value:
        logger.warning(
            "role claim %r for %s disagrees with stored role %r, using stored role",
            role_claim, identity_id, role.value,
        )
    return Identity(
        id=identity_id,
        email=(judge.email if judge and judge.email else email) or "",
        role=role,
        name=judge.display_name if judge is not None else "",
    )


def identity_from_connection(
    connection: HTTPConnection, judge_repository: DBJudgeRepository,
) -> Identity:
    return resolve_identity(
        judge_repository,
        connection.headers.get(IDENTITY_HEADER) or connection.query_params.get("identity_id"),
        connection.headers.get(EMAIL_HEADER, ""),
        connection.headers.get(ROLE_HEADER),
    )


def require_role(identity: Identity, role: Role) -> Identity:
    if identity.role != role:
        raise AuthorizationDenied(f"{role.value} role required")
    return identity


def configure_auth(app) -> None:
    """Read env vars and add the gateway key middleware to a FastAPI app.

    Does nothing if API_KEY is not set.
    """
    api_key = os.getenv("API_KEY", "").strip() or None
    if api_key:
        app.add_middleware(GatewayKeyMiddleware, api_key=api_key)
        logger.info("gateway key auth enabled")
    else:
        logger.info("gateway key auth disabled (API_KEY not set)")

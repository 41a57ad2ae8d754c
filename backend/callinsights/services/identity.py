from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from callinsights.config import Settings
from callinsights.errors import AuthError, UpstreamError

logger = logging.getLogger("callinsights.identity")


@dataclass
class AuthenticatedUser:
    id: str
    email: Optional[str] = None
    access_token: str = ""


class IdentityProvider(Protocol):
    async def get_user(self, access_token: str) -> AuthenticatedUser: ...


class HttpIdentityProvider:
    """Resolves a session token through the identity provider's ``/user`` endpoint."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        headers = {}
        if settings.auth_api_key:
            headers["apikey"] = settings.auth_api_key
        self._client = httpx.AsyncClient(
            base_url=settings.auth_url.rstrip("/"),
            headers=headers,
            timeout=settings.auth_timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_user(self, access_token: str) -> AuthenticatedUser:
        if not access_token:
            raise AuthError("Unauthorized")
        try:
            response = await self._client.get("/user", headers={"Authorization": f"Bearer {access_token}"})
        except httpx.HTTPError as exc:
            raise UpstreamError("Identity provider unreachable") from exc
        if response.status_code in (401, 403):
            raise AuthError("Unauthorized")
        if not response.is_success:
            logger.error("Identity provider returned HTTP %s", response.status_code)
            raise UpstreamError("Identity provider error", status_code=response.status_code)
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamError("Identity provider returned malformed JSON") from exc
        user_id = body.get("id") if isinstance(body, dict) else None
        if not user_id:
            raise AuthError("Unauthorized")
        return AuthenticatedUser(id=str(user_id), email=body.get("email"), access_token=access_token)


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthError("Unauthorized")
    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise AuthError("Unauthorized")
    return token

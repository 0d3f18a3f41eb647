from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from searchhub.errors import TokenProviderError, TransientError

logger = logging.getLogger(__name__)

HttpClientFactory = Callable[[], httpx.AsyncClient]

# OAuth2 error strings meaning the grant itself is dead, not just the access token.
_REAUTH_OAUTH_ERRORS = {"invalid_grant", "unauthorized_client", "invalid_refresh_token", "token_revoked"}

# Remote token service codes for "token not found / invalid".
_REAUTH_PROVIDER_CODES = {"TOKEN_NOT_FOUND", "INVALID_REFRESH_TOKEN", "TOKEN_REVOKED", 40401, 40101}


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    identity: dict[str, Any] = field(default_factory=dict)


class TokenProvider(Protocol):
    async def exchange_code(self, code: str) -> TokenGrant: ...

    async def refresh(self, refresh_token: str) -> TokenGrant: ...


def grant_from_payload(data: dict[str, Any], *, identity: dict[str, Any] | None = None) -> TokenGrant:
    access_token = str(data.get("access_token") or "").strip()
    if not access_token:
        raise TokenProviderError("Token response did not include access_token")
    refresh_raw = str(data.get("refresh_token") or "").strip()
    expires_raw = data.get("expires_in")
    try:
        expires_in = int(expires_raw) if expires_raw is not None else None
    except (TypeError, ValueError):
        expires_in = None
    return TokenGrant(
        access_token=access_token,
        refresh_token=refresh_raw or None,
        expires_in=expires_in,
        identity=dict(identity if identity is not None else data.get("identity") or {}),
    )


async def post_form(http: HttpClientFactory, url: str, **kwargs: Any) -> httpx.Response:
    try:
        return await http().post(url, **kwargs)
    except httpx.HTTPError as exc:
        raise TransientError(f"Token endpoint unreachable: {exc}") from exc


class OAuth2TokenProvider:
    """Standard authorization-code / refresh-token grant against a provider token URL."""

    def __init__(
        self,
        *,
        token_url: str,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str,
        http: HttpClientFactory,
    ):
        self.token_url = token_url
        self._client_id = (client_id or "").strip()
        self._client_secret = (client_secret or "").strip()
        self._redirect_uri = redirect_uri
        self._http = http

    def _credentials(self) -> dict[str, str]:
        if not self._client_id or not self._client_secret:
            raise TokenProviderError("OAuth client_id/client_secret are not configured")
        return {"client_id": self._client_id, "client_secret": self._client_secret}

    async def _post(self, payload: dict[str, str]) -> TokenGrant:
        resp = await post_form(self._http, self.token_url, data=payload)
        if resp.status_code >= 500:
            raise TransientError(f"Token endpoint returned {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            error = str(data.get("error") or "") if isinstance(data, dict) else ""
            raise TokenProviderError(
                f"OAuth token request failed: {error or resp.text[:300]}",
                requires_reauth=error in _REAUTH_OAUTH_ERRORS,
                code=error or resp.status_code,
            )
        return grant_from_payload(data)

    async def exchange_code(self, code: str) -> TokenGrant:
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._redirect_uri,
            **self._credentials(),
        }
        return await self._post(payload)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            **self._credentials(),
        }
        return await self._post(payload)


class RemoteTokenProvider:
    """Client for the hosted OAuth service that owns the platform client secrets.

    Responses are wrapped as ``{"code": 0, "data": {...}}``; any other code is an
    authentication failure, and the "not found / invalid" codes additionally mean
    the user has to go through authorization again.
    """

    def __init__(self, *, base_url: str, platform: str, http: HttpClientFactory):
        self.base_url = base_url.rstrip("/")
        self.platform = platform
        self._http = http

    def _url(self, action: str) -> str:
        return f"{self.base_url}/api/oauth/{self.platform}/{action}"

    async def _call(self, action: str, body: dict[str, str]) -> TokenGrant:
        resp = await post_form(self._http, self._url(action), json=body)
        if resp.status_code >= 500:
            raise TransientError(f"Token service returned {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise TokenProviderError(f"Token service returned invalid JSON ({resp.status_code})") from exc
        if not isinstance(payload, dict):
            raise TokenProviderError("Token service returned an unexpected payload")

        code = payload.get("code", 0 if resp.status_code < 400 else resp.status_code)
        if code not in (0, "0") or resp.status_code >= 400:
            message = str(payload.get("msg") or payload.get("message") or payload.get("error") or "token service error")
            requires_reauth = code in _REAUTH_PROVIDER_CODES or resp.status_code == 404
            logger.info("Token service rejected %s for %s: code=%s", action, self.platform, code)
            raise TokenProviderError(message, requires_reauth=requires_reauth, code=code)

        data = payload.get("data")
        if not isinstance(data, dict):
            raise TokenProviderError("Token service response has no data")
        return grant_from_payload(data)

    async def exchange_code(self, code: str) -> TokenGrant:
        return await self._call("exchange", {"code": code})

    async def refresh(self, refresh_token: str) -> TokenGrant:
        return await self._call("refresh", {"refresh_token": refresh_token})

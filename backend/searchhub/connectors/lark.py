from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from searchhub.connectors.base import BaseConnector, Container, Page, epoch_seconds, make_snippet, parse_epoch
from searchhub.credentials import Account
from searchhub.errors import (
    AuthExpiredError,
    ConnectorError,
    ContainerNotFoundError,
    PermissionDeniedError,
    TokenProviderError,
    TransientError,
)
from searchhub.schemas import Attachment, MessageResult, MessageSender, SearchRequest, UserInfo
from searchhub.services.token_provider import TokenGrant, post_form

logger = logging.getLogger(__name__)

LARK_API = "https://open.larksuite.com/open-apis"

NO_PERMISSION = 99991663
MESSAGE_RECALLED = 99991668
TOKEN_EXPIRED = 99002000
RATE_LIMITED = 99991429
INVALID_TOKEN = 99991401
USER_NOT_IN_CHAT = 99991671
CHAT_NOT_FOUND = 99991672

_SYSTEM_MESSAGE_TYPES = {"system", "share_calendar_event", "general_calendar", "hongbao", "merge_forward"}
_MESSAGE_TYPES = {
    "text": "text",
    "post": "text",
    "image": "image",
    "file": "file",
    "audio": "file",
    "video": "file",
    "media": "file",
}
_USER_CACHE_LIMIT = 2000
# refresh the tenant token this many seconds before Lark says it expires
_TENANT_TOKEN_LEEWAY = 60


def _parse_content(raw: dict[str, Any]) -> tuple[dict[str, Any] | None, str]:
    body = raw.get("body") if isinstance(raw.get("body"), dict) else {}
    content = str(body.get("content") or "")
    try:
        parsed = json.loads(content) if content else {}
    except ValueError:
        return None, content
    return (parsed if isinstance(parsed, dict) else None), content


def _post_text(node: Any) -> str:
    if isinstance(node, str):
        return node
    if isinstance(node, list):
        return " ".join(t for t in (_post_text(item) for item in node) if t)
    if isinstance(node, dict):
        if "text" in node or "user_name" in node:
            return str(node.get("text") or node.get("user_name") or "")
        if "content" in node or "title" in node:
            return " ".join(t for t in (str(node.get("title") or ""), _post_text(node.get("content"))) if t)
        # locale-keyed post bodies, e.g. {"en_us": {...}}
        return " ".join(t for t in (_post_text(value) for value in node.values()) if t)
    return ""


def extract_text(raw: dict[str, Any]) -> str:
    content, original = _parse_content(raw)
    if content is None:
        return original
    msg_type = str(raw.get("msg_type") or "")
    if msg_type == "text":
        return str(content.get("text") or "")
    if msg_type == "post":
        return _post_text(content).strip()
    if msg_type == "image":
        return str(content.get("image_key") or "[Image]")
    if msg_type == "file":
        return str(content.get("file_name") or "[File]")
    if msg_type in {"audio", "video", "media"}:
        return str(content.get("file_name") or content.get("title") or "[Media]")
    if msg_type == "sticker":
        return "[Sticker]"
    if msg_type == "share_chat":
        return str(content.get("chat_name") or "[Shared chat]")
    if msg_type == "share_user":
        return str(content.get("user_name") or "[Shared contact]")
    return str(content.get("text") or json.dumps(content, ensure_ascii=False))


def is_system_message(raw: dict[str, Any]) -> bool:
    if raw.get("deleted") or raw.get("msg_type") in _SYSTEM_MESSAGE_TYPES:
        return True
    content, _original = _parse_content(raw)
    template = (content or {}).get("template")
    return isinstance(template, str) and "{" in template


class LarkTokenProvider:
    """User token exchange: app_access_token first, then the user grant on top of it."""

    def __init__(self, connector: "LarkConnector"):
        self._connector = connector

    async def _call(self, url: str, body: dict[str, str], *, token: str | None = None) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        resp = await post_form(self._connector._http, url, json=body, headers=headers)
        if resp.status_code >= 500:
            raise TransientError(f"Lark auth endpoint returned {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise TokenProviderError(f"Lark auth endpoint returned invalid JSON ({resp.status_code})") from exc
        code = data.get("code")
        if code != 0:
            if code == RATE_LIMITED:
                raise TransientError("Lark auth endpoint rate limited")
            raise TokenProviderError(
                f"Lark auth failed: {data.get('msg') or code}",
                requires_reauth=code in (TOKEN_EXPIRED, INVALID_TOKEN),
                code=code,
            )
        return data

    async def _app_access_token(self) -> str:
        app_id, app_secret = self._connector.client_id, self._connector.client_secret
        if not app_id or not app_secret:
            raise TokenProviderError("Lark app_id/app_secret are not configured")
        data = await self._call(f"{LARK_API}/auth/v3/app_access_token/internal", {"app_id": app_id, "app_secret": app_secret})
        return str(data.get("app_access_token") or "")

    @staticmethod
    def _grant(data: dict[str, Any]) -> TokenGrant:
        payload = data.get("data") if isinstance(data.get("data"), dict) else {}
        access_token = str(payload.get("access_token") or "").strip()
        if not access_token:
            raise TokenProviderError("Lark auth response did not include access_token")
        return TokenGrant(
            access_token=access_token,
            refresh_token=str(payload.get("refresh_token") or "").strip() or None,
            expires_in=int(payload["expires_in"]) if payload.get("expires_in") else None,
            identity={
                "open_id": payload.get("open_id") or "",
                "name": payload.get("name") or "",
                "email": payload.get("email") or "",
                "avatar": payload.get("avatar_url") or "",
                "tenant_key": payload.get("tenant_key") or "",
            },
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        app_token = await self._app_access_token()
        data = await self._call(
            f"{LARK_API}/authen/v1/access_token",
            {"grant_type": "authorization_code", "code": code},
            token=app_token,
        )
        return self._grant(data)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        app_token = await self._app_access_token()
        data = await self._call(
            f"{LARK_API}/authen/v1/refresh_access_token",
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            token=app_token,
        )
        return self._grant(data)


class LarkConnector(BaseConnector):
    platform = "lark"
    native_filters = frozenset({"date"})
    snippet_length = 200

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._tenant_token: str | None = None
        self._tenant_token_expires_at = 0.0
        self._users: dict[str, MessageSender] = {}

    @property
    def client_id(self) -> str | None:
        return self.config.client_id or self._settings.lark_app_id

    @property
    def client_secret(self) -> str | None:
        return self.config.client_secret or self._settings.lark_app_secret

    def _build_token_provider(self) -> LarkTokenProvider:
        return LarkTokenProvider(self)

    def _parse_response(self, resp: httpx.Response) -> dict[str, Any]:
        # Lark reports API errors as a JSON body with a non-zero code, often on a 4xx.
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("code") not in (None, 0):
            self._raise_for_code(payload.get("code"), str(payload.get("msg") or ""))
        return super()._parse_response(resp)

    def _raise_for_code(self, code: Any, message: str) -> None:
        detail = f"Lark API error {code}: {message}"
        if code in (TOKEN_EXPIRED, INVALID_TOKEN):
            raise AuthExpiredError(detail, platform=self.platform)
        if code == RATE_LIMITED:
            raise TransientError(detail, platform=self.platform)
        if code in (NO_PERMISSION, USER_NOT_IN_CHAT):
            raise PermissionDeniedError(detail, platform=self.platform)
        if code in (CHAT_NOT_FOUND, MESSAGE_RECALLED):
            raise ContainerNotFoundError(detail, platform=self.platform)
        raise ConnectorError(detail, platform=self.platform)

    async def _resolve_credential(self, account: Account) -> str:
        if self._tenant_token and time.monotonic() < self._tenant_token_expires_at:
            return self._tenant_token
        if not self.client_id or not self.client_secret:
            raise ConnectorError("Lark app_id/app_secret are not configured", platform=self.platform)
        data = await self._api(
            "POST",
            f"{LARK_API}/auth/v3/tenant_access_token/internal",
            json={"app_id": self.client_id, "app_secret": self.client_secret},
        )
        token = str(data.get("tenant_access_token") or "")
        if not token:
            raise ConnectorError("Lark did not return a tenant_access_token", platform=self.platform)
        expire = int(data.get("expire") or 7200)
        self._tenant_token = token
        self._tenant_token_expires_at = time.monotonic() + max(0, expire - _TENANT_TOKEN_LEEWAY)
        return token

    async def _on_search_auth_expired(self, account: Account) -> Account:
        # Searches run on the app-level tenant token; drop it so the retry derives a fresh one.
        self._tenant_token = None
        return account

    async def _fetch_user_info(self, access_token: str) -> UserInfo:
        data = await self._api("GET", f"{LARK_API}/authen/v1/user_info", token=access_token)
        user = data.get("data") if isinstance(data.get("data"), dict) else {}
        return UserInfo(
            id=str(user.get("open_id") or ""),
            name=str(user.get("name") or user.get("en_name") or ""),
            email=user.get("email") or None,
            avatar=user.get("avatar_url") or None,
        )

    async def _identity_from_grant(self, grant: TokenGrant) -> tuple[UserInfo, dict[str, str]]:
        identity = grant.identity
        if identity.get("open_id"):
            info = UserInfo(
                id=str(identity["open_id"]),
                name=str(identity.get("name") or identity["open_id"]),
                email=identity.get("email") or None,
                avatar=identity.get("avatar") or None,
            )
        else:
            info = await self._fetch_user_info(grant.access_token)
        extra = {"open_id": info.id}
        if identity.get("tenant_key"):
            extra["tenant_key"] = str(identity["tenant_key"])
        return info, extra

    async def _list_containers(self, account: Account, token: str, cursor: str | None) -> Page:
        params = {"page_size": "100"}
        if cursor:
            params["page_token"] = cursor
        data = await self._api("GET", f"{LARK_API}/im/v1/chats", token=token, params=params)
        payload = data.get("data") if isinstance(data.get("data"), dict) else {}
        containers = [
            Container(id=str(chat["chat_id"]), name=str(chat.get("name") or chat["chat_id"]))
            for chat in payload.get("items") or []
            if isinstance(chat, dict) and chat.get("chat_id")
        ]
        next_cursor = str(payload.get("page_token") or "") or None if payload.get("has_more") else None
        return Page(items=containers, next_cursor=next_cursor)

    async def _fetch_messages_page(
        self,
        account: Account,
        token: str,
        container: Container,
        request: SearchRequest,
        cursor: str | None,
    ) -> Page:
        params: dict[str, str] = {
            "container_id_type": "chat",
            "container_id": container.id,
            "page_size": str(self.option("message_page_size")),
            "sort_type": "ByCreateTimeDesc",
        }
        date_range = request.filters.date_range if request.filters else None
        if date_range is not None and date_range.start is not None:
            params["start_time"] = str(epoch_seconds(date_range.start))
        if date_range is not None and date_range.end is not None:
            params["end_time"] = str(epoch_seconds(date_range.end))
        if cursor:
            params["page_token"] = cursor
        data = await self._api("GET", f"{LARK_API}/im/v1/messages", token=token, params=params)
        payload = data.get("data") if isinstance(data.get("data"), dict) else {}
        items = [item for item in payload.get("items") or [] if isinstance(item, dict)]
        next_cursor = str(payload.get("page_token") or "") or None if payload.get("has_more") else None
        return Page(items=items, next_cursor=next_cursor)

    def _prefilter(self, raw: Any, request: SearchRequest) -> bool:
        if is_system_message(raw):
            return False
        query = request.query.strip().lower()
        return not query or query in extract_text(raw).lower()

    async def _sender(self, raw_sender: dict[str, Any], token: str) -> MessageSender:
        sender_id = str(raw_sender.get("id") or "")
        if not sender_id:
            return MessageSender(name="unknown", id="unknown")
        if raw_sender.get("sender_type") == "app":
            return MessageSender(name="App", id=sender_id)
        cached = self._users.get(sender_id)
        if cached is not None:
            return cached
        try:
            data = await self._api(
                "GET",
                f"{LARK_API}/contact/v3/users/{sender_id}",
                token=token,
                params={"user_id_type": raw_sender.get("id_type") or "open_id"},
            )
        except (ConnectorError, TransientError) as exc:
            logger.debug("Lark user lookup failed for %s: %s", sender_id, exc)
            return MessageSender(name=sender_id, id=sender_id)
        user = (data.get("data") or {}).get("user") if isinstance(data.get("data"), dict) else None
        user = user if isinstance(user, dict) else {}
        avatar = user.get("avatar") if isinstance(user.get("avatar"), dict) else {}
        sender = MessageSender(
            name=str(user.get("name") or user.get("en_name") or sender_id),
            id=sender_id,
            email=user.get("email") or user.get("enterprise_email") or None,
            avatar=avatar.get("avatar_72") or None,
        )
        if len(self._users) >= _USER_CACHE_LIMIT:
            self._users.clear()
        self._users[sender_id] = sender
        return sender

    async def _normalize(self, raw: Any, account: Account, container: Container, token: str) -> MessageResult | None:
        message_id = str(raw.get("message_id") or "").strip()
        if not message_id:
            return None
        msg_type = str(raw.get("msg_type") or "")
        content = extract_text(raw)
        sender = await self._sender(raw.get("sender") if isinstance(raw.get("sender"), dict) else {}, token)

        attachments: list[Attachment] = []
        parsed, _original = _parse_content(raw)
        if parsed and msg_type in {"file", "audio", "video", "media"} and parsed.get("file_key"):
            attachments.append(Attachment(id=str(parsed["file_key"]), name=str(parsed.get("file_name") or parsed["file_key"])))
        elif parsed and msg_type == "image" and parsed.get("image_key"):
            attachments.append(Attachment(id=str(parsed["image_key"]), name=str(parsed["image_key"]), mime_type="image/*"))

        return MessageResult(
            id=message_id,
            platform=self.platform,
            sender=sender,
            content=content,
            snippet=make_snippet(content, self.snippet_length),
            timestamp=parse_epoch(raw.get("create_time")),
            channel=container.name,
            deep_link=f"https://applink.larksuite.com/client/chat/open?openChatId={container.id}&messageId={message_id}",
            message_type=_MESSAGE_TYPES.get(msg_type, "other"),
            attachments=attachments,
            metadata={
                "msg_type": msg_type,
                "chat_id": container.id,
                "parent_id": raw.get("parent_id"),
                "root_id": raw.get("root_id"),
            },
            account_id=account.id,
        )

    async def disconnect(self) -> None:
        self._tenant_token = None
        self._users.clear()
        await super().disconnect()

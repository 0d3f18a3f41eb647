from __future__ import annotations

import logging
from typing import Any

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

SLACK_API = "https://slack.com/api"

_AUTH_ERRORS = {"invalid_auth", "not_authed", "token_expired", "token_revoked", "account_inactive"}
_PERMISSION_ERRORS = {"not_in_channel", "missing_scope", "access_denied", "restricted_action"}
_REAUTH_GRANT_ERRORS = {"invalid_refresh_token", "invalid_grant", "token_revoked", "token_expired"}
_SKIPPED_SUBTYPES = {
    "channel_join",
    "channel_leave",
    "channel_topic",
    "channel_purpose",
    "channel_name",
    "channel_archive",
    "channel_unarchive",
    "group_join",
    "group_leave",
}
_USER_CACHE_LIMIT = 2000


def extract_text(message: dict[str, Any]) -> str:
    parts: list[str] = []

    def add(value: Any) -> None:
        text = str(value or "").strip()
        if text and text not in parts:
            parts.append(text)

    add(message.get("text"))
    for attachment in message.get("attachments") or []:
        if not isinstance(attachment, dict):
            continue
        add(attachment.get("pretext"))
        add(attachment.get("title"))
        add(attachment.get("text"))
        if not (attachment.get("pretext") or attachment.get("title") or attachment.get("text")):
            add(attachment.get("fallback"))
        for fld in attachment.get("fields") or []:
            if not isinstance(fld, dict):
                continue
            if fld.get("title"):
                add(f"{fld['title']}: {fld.get('value') or ''}")
            else:
                add(fld.get("value"))
    for block in message.get("blocks") or []:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "section" and isinstance(block.get("text"), dict):
            add(block["text"].get("text"))
        elif block.get("type") == "rich_text":
            for element in block.get("elements") or []:
                fragments = [str(sub.get("text") or "") for sub in element.get("elements") or [] if isinstance(sub, dict)]
                add("".join(fragments))
    return "\n".join(parts)


def _message_text(message: dict[str, Any]) -> str:
    # file-only messages are known by their file names
    text = extract_text(message)
    if text:
        return text
    files = [f for f in message.get("files") or [] if isinstance(f, dict)]
    return " ".join(str(f.get("name") or f.get("title") or "file") for f in files)


class SlackTokenProvider:
    """oauth.v2.access for both the code exchange and token rotation."""

    def __init__(self, connector: "SlackConnector"):
        self._connector = connector

    async def _post(self, payload: dict[str, str]) -> dict[str, Any]:
        client_id, client_secret = self._connector.client_id, self._connector.client_secret
        if not client_id or not client_secret:
            raise TokenProviderError("Slack client_id/client_secret are not configured")
        resp = await post_form(
            self._connector._http,
            f"{SLACK_API}/oauth.v2.access",
            data={"client_id": client_id, "client_secret": client_secret, **payload},
        )
        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientError(f"Slack oauth.v2.access returned {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise TokenProviderError("Slack oauth.v2.access returned invalid JSON") from exc
        if not data.get("ok"):
            error = str(data.get("error") or "unknown_error")
            raise TokenProviderError(f"Slack OAuth failed: {error}", requires_reauth=error in _REAUTH_GRANT_ERRORS, code=error)
        return data

    @staticmethod
    def _grant(data: dict[str, Any]) -> TokenGrant:
        # User tokens live under authed_user; bot-only installs put them at the top level.
        user = data.get("authed_user") if isinstance(data.get("authed_user"), dict) else {}
        source = user if user.get("access_token") else data
        access_token = str(source.get("access_token") or "").strip()
        if not access_token:
            raise TokenProviderError("Slack OAuth response did not include access_token")
        team = data.get("team") if isinstance(data.get("team"), dict) else {}
        return TokenGrant(
            access_token=access_token,
            refresh_token=str(source.get("refresh_token") or "").strip() or None,
            expires_in=int(source["expires_in"]) if source.get("expires_in") else None,
            identity={"user_id": user.get("id") or "", "team_id": team.get("id") or "", "team_name": team.get("name") or ""},
        )

    async def exchange_code(self, code: str) -> TokenGrant:
        redirect_uri = self._connector._settings.oauth_redirect_uri
        return self._grant(await self._post({"code": code, "redirect_uri": redirect_uri}))

    async def refresh(self, refresh_token: str) -> TokenGrant:
        return self._grant(await self._post({"grant_type": "refresh_token", "refresh_token": refresh_token}))


class SlackConnector(BaseConnector):
    platform = "slack"
    native_filters = frozenset({"date"})
    snippet_length = 150

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._users: dict[str, MessageSender] = {}

    def _build_token_provider(self) -> SlackTokenProvider:
        return SlackTokenProvider(self)

    def _check_payload(self, payload: dict[str, Any]) -> None:
        if payload.get("ok", True):
            return
        error = str(payload.get("error") or "unknown_error")
        if error in _AUTH_ERRORS:
            raise AuthExpiredError(f"Slack auth error: {error}", platform=self.platform)
        if error == "ratelimited":
            raise TransientError("Slack rate limited", platform=self.platform)
        if error == "channel_not_found":
            raise ContainerNotFoundError("Slack channel not found", platform=self.platform)
        if error in _PERMISSION_ERRORS:
            raise PermissionDeniedError(f"Slack permission error: {error}", platform=self.platform)
        raise ConnectorError(f"Slack API error: {error}", platform=self.platform)

    async def _auth_test(self, access_token: str) -> dict[str, Any]:
        return await self._api("POST", f"{SLACK_API}/auth.test", token=access_token)

    async def _fetch_user_info(self, access_token: str) -> UserInfo:
        data = await self._auth_test(access_token)
        return UserInfo(
            id=str(data.get("user_id") or ""),
            name=str(data.get("user") or data.get("user_id") or ""),
            workspace=str(data.get("team") or "") or None,
        )

    async def _identity_from_grant(self, grant: TokenGrant) -> tuple[UserInfo, dict[str, str]]:
        data = await self._auth_test(grant.access_token)
        user_id = str(data.get("user_id") or grant.identity.get("user_id") or "")
        team_id = str(data.get("team_id") or grant.identity.get("team_id") or "")
        info = UserInfo(
            id=f"{team_id}:{user_id}" if team_id else user_id,
            name=str(data.get("user") or user_id),
            workspace=str(data.get("team") or grant.identity.get("team_name") or "") or None,
        )
        extra = {"team_id": team_id, "user_id": user_id}
        url = str(data.get("url") or "")
        if url.startswith("https://") and ".slack.com" in url:
            extra["team_domain"] = url.removeprefix("https://").split(".slack.com", 1)[0]
        return info, extra

    async def _list_containers(self, account: Account, token: str, cursor: str | None) -> Page:
        params: dict[str, str] = {
            "types": "public_channel,private_channel,mpim,im",
            "exclude_archived": "true",
            "limit": "200",
        }
        if cursor:
            params["cursor"] = cursor
        data = await self._api("GET", f"{SLACK_API}/conversations.list", token=token, params=params)
        containers: list[Container] = []
        for channel in data.get("channels") or []:
            if not isinstance(channel, dict) or not channel.get("id"):
                continue
            is_dm = bool(channel.get("is_im"))
            # public channels list every channel in the workspace; only joined ones are readable
            if not is_dm and channel.get("is_member") is False:
                continue
            name = f"#{channel['name']}" if channel.get("name") and not is_dm else f"DM {channel.get('user') or channel['id']}"
            containers.append(Container(id=str(channel["id"]), name=name))
        metadata = data.get("response_metadata") if isinstance(data.get("response_metadata"), dict) else {}
        return Page(items=containers, next_cursor=str(metadata.get("next_cursor") or "") or None)

    async def _fetch_messages_page(
        self,
        account: Account,
        token: str,
        container: Container,
        request: SearchRequest,
        cursor: str | None,
    ) -> Page:
        params: dict[str, str] = {
            "channel": container.id,
            "limit": str(self.option("message_page_size")),
            "inclusive": "true",
        }
        date_range = request.filters.date_range if request.filters else None
        if date_range is not None and date_range.start is not None:
            params["oldest"] = str(epoch_seconds(date_range.start))
        if date_range is not None and date_range.end is not None:
            params["latest"] = str(epoch_seconds(date_range.end))
        if cursor:
            params["cursor"] = cursor
        data = await self._api("GET", f"{SLACK_API}/conversations.history", token=token, params=params)
        messages = [m for m in data.get("messages") or [] if isinstance(m, dict)]
        next_cursor = None
        if data.get("has_more"):
            metadata = data.get("response_metadata") if isinstance(data.get("response_metadata"), dict) else {}
            next_cursor = str(metadata.get("next_cursor") or "") or None
        return Page(items=messages, next_cursor=next_cursor)

    def _prefilter(self, raw: Any, request: SearchRequest) -> bool:
        if raw.get("subtype") in _SKIPPED_SUBTYPES:
            return False
        query = request.query.strip().lower()
        return not query or query in _message_text(raw).lower()

    async def _sender(self, user_id: str, token: str) -> MessageSender:
        cached = self._users.get(user_id)
        if cached is not None:
            return cached
        try:
            data = await self._api("GET", f"{SLACK_API}/users.info", token=token, params={"user": user_id})
        except (ConnectorError, TransientError) as exc:
            logger.debug("Slack users.info failed for %s: %s", user_id, exc)
            return MessageSender(name=user_id, id=user_id)
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        profile = user.get("profile") if isinstance(user.get("profile"), dict) else {}
        sender = MessageSender(
            name=str(user.get("real_name") or profile.get("real_name") or user.get("name") or user_id),
            id=user_id,
            email=profile.get("email") or None,
            avatar=profile.get("image_72") or None,
            display_name=profile.get("display_name") or None,
        )
        if len(self._users) >= _USER_CACHE_LIMIT:
            self._users.clear()
        self._users[user_id] = sender
        return sender

    def _deep_link(self, account: Account, channel_id: str, ts: str) -> str:
        domain = account.extra.get("team_domain")
        if domain:
            return f"https://{domain}.slack.com/archives/{channel_id}/p{ts.replace('.', '')}"
        team_id = account.extra.get("team_id", "")
        return f"slack://channel?team={team_id}&id={channel_id}&message={ts}"

    async def _normalize(self, raw: Any, account: Account, container: Container, token: str) -> MessageResult | None:
        ts = str(raw.get("ts") or "").strip()
        if not ts:
            return None
        team_id = account.extra.get("team_id")
        message_team = raw.get("team") or raw.get("team_id")
        if team_id and message_team and message_team != team_id:
            return None

        user_id = str(raw.get("user") or "")
        if user_id:
            sender = await self._sender(user_id, token)
        else:
            bot_name = str(raw.get("username") or (raw.get("bot_profile") or {}).get("name") or raw.get("bot_id") or "unknown")
            sender = MessageSender(name=bot_name, id=str(raw.get("bot_id") or bot_name))

        attachments = [
            Attachment(
                id=str(f.get("id") or ""),
                name=str(f.get("name") or f.get("title") or "file"),
                mime_type=str(f.get("mimetype") or "application/octet-stream"),
                size=int(f.get("size") or 0),
                url=f.get("url_private") or None,
            )
            for f in raw.get("files") or []
            if isinstance(f, dict)
        ]
        if not attachments:
            message_type = "text"
        elif all(a.mime_type.startswith("image/") for a in attachments):
            message_type = "image"
        else:
            message_type = "file"

        content = _message_text(raw)
        return MessageResult(
            # ts is only unique within a channel
            id=f"{container.id}:{ts}",
            platform=self.platform,
            sender=sender,
            content=content,
            snippet=make_snippet(content, self.snippet_length),
            timestamp=parse_epoch(ts),
            channel=container.name,
            deep_link=raw.get("permalink") or self._deep_link(account, container.id, ts),
            message_type=message_type,
            attachments=attachments,
            metadata={
                "channel_id": container.id,
                "ts": ts,
                "thread_ts": raw.get("thread_ts"),
                "subtype": raw.get("subtype"),
                "team_id": team_id,
                "reply_count": raw.get("reply_count", 0),
            },
            account_id=account.id,
        )

    async def disconnect(self) -> None:
        self._users.clear()
        await super().disconnect()

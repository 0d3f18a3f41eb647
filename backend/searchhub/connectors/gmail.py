from __future__ import annotations

import asyncio
import base64
import re
from datetime import datetime, timedelta, timezone
from email.utils import parseaddr, parsedate_to_datetime
from html import unescape
from typing import Any

from searchhub.connectors.base import BaseConnector, Container, Page, make_snippet, parse_epoch
from searchhub.credentials import Account
from searchhub.errors import ContainerNotFoundError, PermissionDeniedError
from searchhub.schemas import Attachment, MessageResult, MessageSender, SearchRequest, UserInfo
from searchhub.services.token_provider import OAuth2TokenProvider, TokenGrant, TokenProvider

GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

_ADVANCED_SYNTAX = re.compile(r"\b(from:|to:|cc:|bcc:|subject:|in:|is:|has:|label:|filename:)")
_DETAIL_CONCURRENCY = 10


def _header_map(headers: list[dict[str, Any]] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for header in headers or []:
        name = str(header.get("name") or "").strip()
        if not name:
            continue
        out[name.lower()] = str(header.get("value") or "")
    return out


def _decode_base64url(value: str) -> str:
    if not value:
        return ""
    padding = "=" * ((4 - len(value) % 4) % 4)
    raw = base64.urlsafe_b64decode((value + padding).encode("utf-8"))
    return raw.decode("utf-8", errors="ignore")


def _html_to_text(html: str) -> str:
    text = re.sub(r"<(head|style|script)[^>]*>[\s\S]*?</\1>", " ", html or "", flags=re.I)
    text = re.sub(r"<!--[\s\S]*?-->", " ", text)
    text = re.sub(r"<br\s*/?>|</p>|</div>|</li>|</tr>|</h[1-6]>", "\n", text, flags=re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = unescape(text).replace("\u00a0", " ")
    text = re.sub("[\u200b-\u200d\ufeff\u034f]", "", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _find_body(payload: dict[str, Any] | None, mime_type: str) -> str:
    if not payload:
        return ""
    body = payload.get("body") if isinstance(payload.get("body"), dict) else {}
    encoded = str(body.get("data") or "")
    if str(payload.get("mimeType") or "") == mime_type and encoded and not payload.get("filename"):
        return _decode_base64url(encoded)
    for part in payload.get("parts") or []:
        if isinstance(part, dict):
            text = _find_body(part, mime_type)
            if text:
                return text
    return ""


def _extract_body(payload: dict[str, Any] | None) -> str:
    plain = _find_body(payload, "text/plain").strip()
    if plain:
        return plain
    html = _find_body(payload, "text/html")
    if html:
        return _html_to_text(html)
    body = (payload or {}).get("body") if isinstance((payload or {}).get("body"), dict) else {}
    return _decode_base64url(str(body.get("data") or "")).strip()


def _collect_attachments(payload: dict[str, Any] | None, message_id: str) -> list[Attachment]:
    out: list[Attachment] = []
    if not payload:
        return out
    filename = str(payload.get("filename") or "").strip()
    body = payload.get("body") if isinstance(payload.get("body"), dict) else {}
    if filename:
        out.append(
            Attachment(
                id=str(body.get("attachmentId") or f"{message_id}:{payload.get('partId') or len(out)}"),
                name=filename,
                mime_type=str(payload.get("mimeType") or "application/octet-stream"),
                size=int(body.get("size") or 0),
            )
        )
    for part in payload.get("parts") or []:
        if isinstance(part, dict):
            out.extend(_collect_attachments(part, message_id))
    return out


def _to_datetime(value: str | None, fallback_ms: str | None) -> datetime:
    if fallback_ms:
        return parse_epoch(fallback_ms)
    if value:
        try:
            dt = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            dt = None
        if dt is not None:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
    return datetime.fromtimestamp(0, tz=timezone.utc)


def _utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _quote(term: str) -> str:
    if any(ch.isspace() for ch in term) or "@" in term:
        return f'"{term}"'
    return term


def build_query(request: SearchRequest) -> str:
    """Translate a search request into Gmail's ``q`` search syntax."""
    user_query = request.query.strip()
    if _ADVANCED_SYNTAX.search(user_query):
        query = user_query
    else:
        quoted = _quote(user_query.replace('"', ""))
        query = f"{{{quoted} from:{quoted} to:{quoted} cc:{quoted} subject:{quoted}}}"

    filters = request.filters
    if filters is not None:
        date_range = filters.date_range
        if date_range is not None and date_range.start is not None:
            query += f" after:{_utc(date_range.start):%Y/%m/%d}"
        if date_range is not None and date_range.end is not None:
            # `before:` is exclusive of the given day.
            end = _utc(date_range.end) + timedelta(days=1)
            query += f" before:{end:%Y/%m/%d}"
        if filters.sender:
            query += f" from:{_quote(filters.sender.strip())}"
    return query


class GmailConnector(BaseConnector):
    platform = "gmail"
    native_filters = frozenset({"keyword", "sender", "date"})
    snippet_length = 200

    def _build_token_provider(self) -> TokenProvider:
        return OAuth2TokenProvider(
            token_url=GOOGLE_TOKEN_URL,
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self._settings.oauth_redirect_uri,
            http=self._http,
        )

    def _label_ids(self) -> list[str]:
        raw = self.option("gmail_labels")
        labels = raw.split(",") if isinstance(raw, str) else list(raw or [])
        return [label.strip() for label in labels if label and label.strip()]

    async def _fetch_user_info(self, access_token: str) -> UserInfo:
        profile = await self._api("GET", f"{GMAIL_API}/profile", token=access_token)
        email = str(profile.get("emailAddress") or "").strip()
        return UserInfo(id=email, name=email, email=email or None)

    async def _identity_from_grant(self, grant: TokenGrant) -> tuple[UserInfo, dict[str, str]]:
        info = await self._fetch_user_info(grant.access_token)
        try:
            claims = await self._api("GET", GOOGLE_USERINFO_URL, token=grant.access_token)
        except (ContainerNotFoundError, PermissionDeniedError):
            # token granted without the openid scopes
            claims = {}
        name = str(claims.get("name") or "").strip()
        if name or claims.get("picture"):
            info = info.model_copy(update={"name": name or info.name, "avatar": claims.get("picture")})
        return info, {}

    async def _list_containers(self, account: Account, token: str, cursor: str | None) -> Page:
        data = await self._api("GET", f"{GMAIL_API}/labels", token=token)
        wanted = self._label_ids()
        labels = {str(label.get("id")): label for label in data.get("labels") or [] if isinstance(label, dict)}
        if not wanted:
            wanted = sorted(labels)
        containers = [
            Container(id=label_id, name=str(labels[label_id].get("name") or label_id))
            for label_id in wanted
            if label_id in labels
        ]
        return Page(items=containers)

    async def _fetch_messages_page(
        self,
        account: Account,
        token: str,
        container: Container,
        request: SearchRequest,
        cursor: str | None,
    ) -> Page:
        params: dict[str, str] = {
            "q": build_query(request),
            "labelIds": container.id,
            "maxResults": str(self.option("message_page_size")),
        }
        if cursor:
            params["pageToken"] = cursor
        listing = await self._api("GET", f"{GMAIL_API}/messages", token=token, params=params)
        refs = [ref for ref in listing.get("messages") or [] if isinstance(ref, dict) and ref.get("id")]

        semaphore = asyncio.Semaphore(_DETAIL_CONCURRENCY)

        async def fetch(message_id: str) -> dict[str, Any] | None:
            async with semaphore:
                try:
                    return await self._api(
                        "GET",
                        f"{GMAIL_API}/messages/{message_id}",
                        token=token,
                        params={"format": "full"},
                    )
                except ContainerNotFoundError:
                    # deleted between list and get
                    return None

        details = await asyncio.gather(*(fetch(str(ref["id"])) for ref in refs))
        next_cursor = str(listing.get("nextPageToken") or "") or None
        return Page(items=[d for d in details if d], next_cursor=next_cursor)

    async def _normalize(self, raw: Any, account: Account, container: Container, token: str) -> MessageResult | None:
        message_id = str(raw.get("id") or "").strip()
        if not message_id:
            return None
        payload = raw.get("payload") if isinstance(raw.get("payload"), dict) else {}
        headers = _header_map(payload.get("headers"))
        sender_name, sender_email = parseaddr(headers.get("from", ""))
        subject = headers.get("subject", "")
        body = _extract_body(payload) or unescape(str(raw.get("snippet") or ""))
        attachments = _collect_attachments(payload, message_id)
        if not attachments:
            message_type = "text"
        elif all(a.mime_type.startswith("image/") for a in attachments):
            message_type = "image"
        else:
            message_type = "file"

        return MessageResult(
            id=message_id,
            platform=self.platform,
            sender=MessageSender(
                name=sender_name or sender_email or "unknown",
                id=sender_email or sender_name or "unknown",
                email=sender_email or None,
            ),
            content=body,
            snippet=make_snippet(unescape(str(raw.get("snippet") or "")) or body, self.snippet_length),
            timestamp=_to_datetime(headers.get("date"), raw.get("internalDate")),
            channel=container.name,
            deep_link=f"https://mail.google.com/mail/u/0/#inbox/{message_id}",
            message_type=message_type,
            attachments=attachments,
            metadata={
                "subject": subject,
                "thread_id": raw.get("threadId"),
                "label_ids": list(raw.get("labelIds") or []),
                "to": headers.get("to", ""),
                "cc": headers.get("cc", ""),
            },
            account_id=account.id,
        )

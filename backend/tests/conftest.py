from __future__ import annotations

import json
import sys
from collections import Counter
from pathlib import Path
from typing import Any

import httpx
import pytest

# Ensure `backend/` is on sys.path so `import searchhub.*` works reliably across pytest import modes.
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from searchhub.settings import Settings  # noqa: E402


async def _no_sleep(_delay: float) -> None:
    return None


class FakeLark:
    """In-memory Lark Open API: chats, messages and contacts."""

    def __init__(self) -> None:
        self.chats: dict[str, list[dict[str, Any]]] = {}
        self.failing: dict[str, int] = {}
        self.calls: Counter = Counter()

    def add_message(self, chat_id: str, message_id: str, text: str, *, create_time: int, sender: str = "ou_alice") -> None:
        self.chats.setdefault(chat_id, []).append(
            {
                "message_id": message_id,
                "msg_type": "text",
                "create_time": str(create_time),
                "chat_id": chat_id,
                "sender": {"id": sender, "id_type": "open_id", "sender_type": "user"},
                "body": {"content": json.dumps({"text": text})},
            }
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] += 1
        if path.endswith("/auth/v3/tenant_access_token/internal"):
            return httpx.Response(200, json={"code": 0, "tenant_access_token": "t-tenant", "expire": 7200})
        if path.endswith("/im/v1/chats"):
            items = [{"chat_id": chat_id, "name": f"chat {chat_id}"} for chat_id in self.chats]
            return httpx.Response(200, json={"code": 0, "data": {"items": items, "has_more": False}})
        if path.endswith("/im/v1/messages"):
            chat_id = request.url.params["container_id"]
            if chat_id in self.failing:
                return httpx.Response(400, json={"code": self.failing[chat_id], "msg": "denied"})
            items = sorted(self.chats.get(chat_id, []), key=lambda m: int(m["create_time"]), reverse=True)
            return httpx.Response(200, json={"code": 0, "data": {"items": items, "has_more": False}})
        if "/contact/v3/users/" in path:
            user_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"code": 0, "data": {"user": {"name": f"User {user_id}", "email": f"{user_id}@example.com"}}})
        return httpx.Response(404, json={"code": 1, "msg": f"unexpected path {path}"})


class FakeSlack:
    """In-memory Slack Web API with paged channel history and token rotation."""

    def __init__(self) -> None:
        self.pages: dict[str, list[list[dict[str, Any]]]] = {}
        self.failing: set[str] = set()
        self.valid_tokens: set[str] = {"xoxp-valid"}
        self.rotated = ("xoxp-rotated", "xoxe-rotated")
        self.calls: Counter = Counter()

    def add_page(self, channel: str, messages: list[dict[str, Any]]) -> None:
        self.pages.setdefault(channel, []).append(messages)

    def _token(self, request: httpx.Request) -> str:
        return request.headers.get("Authorization", "").removeprefix("Bearer ")

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        self.calls[method] += 1
        if method == "oauth.v2.access":
            form = dict(httpx.QueryParams(request.content.decode()))
            if form.get("refresh_token") == "xoxe-dead":
                return httpx.Response(200, json={"ok": False, "error": "invalid_refresh_token"})
            access, refresh = self.rotated
            self.valid_tokens.add(access)
            return httpx.Response(200, json={"ok": True, "access_token": access, "refresh_token": refresh, "expires_in": 43200})
        if self._token(request) not in self.valid_tokens:
            return httpx.Response(200, json={"ok": False, "error": "invalid_auth"})
        if method == "auth.test":
            return httpx.Response(
                200,
                json={"ok": True, "user_id": "U1", "user": "alice", "team_id": "T1", "team": "Acme", "url": "https://acme.slack.com/"},
            )
        if method == "conversations.list":
            channels = [{"id": channel, "name": channel.lower(), "is_member": True} for channel in self.pages]
            return httpx.Response(200, json={"ok": True, "channels": channels, "response_metadata": {"next_cursor": ""}})
        if method == "conversations.history":
            channel = request.url.params["channel"]
            if channel in self.failing:
                return httpx.Response(200, json={"ok": False, "error": "not_in_channel"})
            index = int(request.url.params.get("cursor") or 0)
            pages = self.pages.get(channel) or [[]]
            has_more = index + 1 < len(pages)
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "messages": pages[index],
                    "has_more": has_more,
                    "response_metadata": {"next_cursor": str(index + 1) if has_more else ""},
                },
            )
        if method == "users.info":
            user_id = request.url.params["user"]
            return httpx.Response(200, json={"ok": True, "user": {"id": user_id, "real_name": f"User {user_id}", "profile": {}}})
        return httpx.Response(200, json={"ok": False, "error": "unknown_method"})


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        fernet_key=None,
        token_provider_url=None,
        enable_cache=True,
        retry_attempts=2,
        retry_base_delay=0.0,
        container_concurrency=1,
        search_timeout_seconds=60,
        gmail_client_id="gmail-client",
        gmail_client_secret="gmail-secret",
        slack_client_id="slack-client",
        slack_client_secret="slack-secret",
        lark_app_id="cli_test",
        lark_app_secret="lark-secret",
    )


@pytest.fixture
def no_sleep():
    return _no_sleep


@pytest.fixture
def fake_lark() -> FakeLark:
    return FakeLark()


@pytest.fixture
def fake_slack() -> FakeSlack:
    return FakeSlack()


@pytest.fixture
def transport(fake_lark: FakeLark, fake_slack: FakeSlack) -> httpx.MockTransport:
    def route(request: httpx.Request) -> httpx.Response:
        if request.url.host == "slack.com":
            return fake_slack.handler(request)
        if request.url.host == "open.larksuite.com":
            return fake_lark.handler(request)
        return httpx.Response(404, json={"error": "unknown host"})

    return httpx.MockTransport(route)

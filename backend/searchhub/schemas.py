from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

Platform = Literal["gmail", "slack", "lark"]
MessageType = Literal["text", "file", "image", "other"]
MessageTypeFilter = Literal["text", "file", "image", "all"]
AccountStatus = Literal["connected", "disconnected", "error"]
ProgressStage = Literal["fetching_containers", "searching", "completed", "error"]


class DateRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("date_range.start must not be after date_range.end")
        return self


class SearchFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    date_range: Optional[DateRange] = None
    sender: Optional[str] = None
    message_type: Optional[MessageTypeFilter] = None


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int = Field(default=1, ge=1)
    limit: Optional[int] = Field(default=None, ge=1, le=1000)


class SearchRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str
    platforms: Optional[list[str]] = None
    accounts: Optional[list[str]] = None
    accounts_by_platform: Optional[dict[str, list[str]]] = None
    filters: Optional[SearchFilters] = None
    pagination: Optional[Pagination] = None


class MessageSender(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    id: str
    email: Optional[str] = None
    avatar: Optional[str] = None
    display_name: Optional[str] = None


class Attachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    mime_type: str = "application/octet-stream"
    size: int = 0
    url: Optional[str] = None


class MessageResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    platform: str
    sender: MessageSender
    content: str
    snippet: str
    timestamp: datetime
    channel: str
    deep_link: str
    message_type: MessageType = "text"
    attachments: list[Attachment] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    account_id: Optional[str] = None


class PlatformSearchStatus(BaseModel):
    platform: str
    success: bool
    result_count: int = 0
    error: Optional[str] = None
    # reauth, auth, permission, not_found, transient, not_loaded or unknown
    error_kind: Optional[str] = None
    search_time_ms: float = 0.0
    failed_accounts: list[str] = Field(default_factory=list)
    skipped_accounts: list[str] = Field(default_factory=list)
    requires_reauth: bool = False


class SearchResponse(BaseModel):
    search_id: str
    results: list[MessageResult]
    total_count: int
    has_more: bool
    search_time_ms: float
    platform_status: dict[str, PlatformSearchStatus]
    cached: bool = False
    cancelled: bool = False


class SearchProgress(BaseModel):
    search_id: str
    platform: str
    account_id: Optional[str] = None
    stage: ProgressStage
    total_containers: int = 0
    processed_containers: int = 0
    found_messages: int = 0
    error: Optional[str] = None


class UserInfo(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
    avatar: Optional[str] = None
    workspace: Optional[str] = None


class AuthResult(BaseModel):
    success: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    user_info: Optional[UserInfo] = None
    error: Optional[str] = None
    requires_reauth: bool = False
    account_id: Optional[str] = None
    # platform specifics persisted on the account, e.g. Slack team_id / team_domain
    extra: dict[str, str] = Field(default_factory=dict)


class ConnectorConfig(BaseModel):
    platform: Platform
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    token_provider_url: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)


class AuthenticateRequest(BaseModel):
    code: str = Field(min_length=1)


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    platform: str
    identifier: str
    display_name: Optional[str] = None
    status: AccountStatus
    expires_at: Optional[datetime] = None


class CacheEntryInfo(BaseModel):
    key: str
    timestamp: float
    ttl: float
    result_count: int


class CacheStats(BaseModel):
    size: int
    max_size: int
    hit_rate: float
    hits: int
    misses: int
    entries: list[CacheEntryInfo]


class PlatformStats(BaseModel):
    searches: int = 0
    successes: int = 0
    failures: int = 0
    average_time_ms: float = 0.0


class MetricsSnapshot(BaseModel):
    total_searches: int
    successful_searches: int
    failed_searches: int
    cancelled_searches: int
    cache_hits: int
    cache_misses: int
    average_search_time_ms: float
    platform_stats: dict[str, PlatformStats]
    errors: dict[str, int]

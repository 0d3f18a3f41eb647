from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Protocol

import httpx

from searchhub.credentials import Account, CredentialStore
from searchhub.errors import (
    AccountNotFoundError,
    AuthExpiredError,
    ConnectorError,
    ContainerNotFoundError,
    InvalidAuthTransition,
    PermissionDeniedError,
    PlatformSearchError,
    ReauthRequiredError,
    TokenProviderError,
    TransientError,
)
from searchhub.schemas import AuthResult, ConnectorConfig, MessageResult, SearchProgress, SearchRequest, UserInfo
from searchhub.services.token_provider import RemoteTokenProvider, TokenGrant, TokenProvider
from searchhub.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SearchProgress], Any]


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    TOKEN_EXPIRED = "token_expired"
    REAUTHORIZING = "reauthorizing"
    REQUIRES_MANUAL_REAUTH = "requires_manual_reauth"


_TRANSITIONS: dict[AuthState, set[AuthState]] = {
    AuthState.UNAUTHENTICATED: {AuthState.AUTHENTICATING},
    AuthState.AUTHENTICATING: {AuthState.AUTHENTICATED, AuthState.UNAUTHENTICATED},
    AuthState.AUTHENTICATED: {AuthState.TOKEN_EXPIRED, AuthState.AUTHENTICATING, AuthState.UNAUTHENTICATED},
    AuthState.TOKEN_EXPIRED: {AuthState.REAUTHORIZING, AuthState.AUTHENTICATING, AuthState.UNAUTHENTICATED},
    AuthState.REAUTHORIZING: {AuthState.AUTHENTICATED, AuthState.TOKEN_EXPIRED, AuthState.REQUIRES_MANUAL_REAUTH},
    AuthState.REQUIRES_MANUAL_REAUTH: {AuthState.AUTHENTICATING, AuthState.UNAUTHENTICATED},
}


class CancelToken:
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class SearchContext:
    search_id: str
    cancel_token: CancelToken = field(default_factory=CancelToken)
    progress: ProgressCallback | None = None
    # platform -> account id -> error, for accounts that failed while siblings succeeded
    account_errors: dict[str, dict[str, BaseException]] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    def record_account_error(self, platform: str, account_id: str, error: BaseException) -> None:
        self.account_errors.setdefault(platform, {})[account_id] = error

    async def report(self, platform: str, stage: str, *, account_id: str | None = None, **counts: Any) -> None:
        if self.progress is None:
            return
        event = SearchProgress(search_id=self.search_id, platform=platform, account_id=account_id, stage=stage, **counts)
        try:
            outcome = self.progress(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.warning("Progress observer failed for search %s", self.search_id, exc_info=True)


@dataclass(frozen=True)
class Container:
    id: str
    name: str
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Page:
    items: list[Any]
    next_cursor: str | None = None


class Connector(Protocol):
    platform: str

    async def authenticate(self, code: str, *, account_id: str | None = None) -> AuthResult: ...

    async def refresh_token(self, account_id: str) -> AuthResult: ...

    async def validate_connection(self, account_id: str) -> bool: ...

    async def get_user_info(self, account_id: str) -> UserInfo: ...

    async def search(self, request: SearchRequest, accounts: list[Account], context: SearchContext) -> list[MessageResult]: ...

    def forget(self, account_id: str) -> None: ...

    async def disconnect(self) -> None: ...


def parse_epoch(value: Any) -> datetime:
    """Parse epoch seconds or milliseconds (number or numeric string) into an aware UTC datetime."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return datetime.fromtimestamp(0, tz=timezone.utc)
    # Anything past the year 5138 in seconds is really milliseconds.
    if abs(number) >= 1e11:
        number = number / 1000
    return datetime.fromtimestamp(number, tz=timezone.utc)


def make_snippet(text: str, length: int) -> str:
    compact = " ".join(text.split())
    if len(compact) <= length:
        return compact
    return compact[:length] + "..."


def sort_results(results: list[MessageResult]) -> list[MessageResult]:
    return sorted(results, key=lambda r: (r.timestamp, r.id), reverse=True)


class BaseConnector:
    """Shared auth lifecycle, HTTP plumbing and the paginated search loop.

    Subclasses provide the platform hooks: ``_build_token_provider``,
    ``_identity_from_grant``, ``_fetch_user_info``, ``_list_containers``,
    ``_fetch_messages_page`` and ``_normalize``.
    """

    platform: ClassVar[str] = ""
    # Filters the platform applies server-side: any of "keyword", "sender", "date", "message_type".
    native_filters: ClassVar[frozenset[str]] = frozenset()
    snippet_length: ClassVar[int] = 200

    def __init__(
        self,
        config: ConnectorConfig,
        store: CredentialStore,
        *,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        token_provider: TokenProvider | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self._store = store
        self._settings = settings or default_settings
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self._auth_states: dict[str, AuthState] = {}
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        remote_url = config.token_provider_url or self._settings.token_provider_url
        if token_provider is not None:
            self._token_provider = token_provider
        elif remote_url:
            self._token_provider = RemoteTokenProvider(base_url=remote_url, platform=self.platform, http=self._http)
        else:
            self._token_provider = self._build_token_provider()

    # -- configuration -------------------------------------------------

    def option(self, name: str) -> Any:
        if name in self.config.settings:
            return self.config.settings[name]
        return getattr(self._settings, name)

    @property
    def client_id(self) -> str | None:
        return self.config.client_id or getattr(self._settings, f"{self.platform}_client_id", None)

    @property
    def client_secret(self) -> str | None:
        return self.config.client_secret or getattr(self._settings, f"{self.platform}_client_secret", None)

    # -- platform hooks ------------------------------------------------

    def _build_token_provider(self) -> TokenProvider:
        raise NotImplementedError

    async def _identity_from_grant(self, grant: TokenGrant) -> tuple[UserInfo, dict[str, str]]:
        return await self._fetch_user_info(grant.access_token), {}

    async def _fetch_user_info(self, access_token: str) -> UserInfo:
        raise NotImplementedError

    async def _resolve_credential(self, account: Account) -> str:
        if not account.access_token:
            raise AuthExpiredError("Account has no access token", platform=self.platform, account_id=account.id)
        return account.access_token

    async def _list_containers(self, account: Account, token: str, cursor: str | None) -> Page:
        raise NotImplementedError

    async def _fetch_messages_page(
        self,
        account: Account,
        token: str,
        container: Container,
        request: SearchRequest,
        cursor: str | None,
    ) -> Page:
        raise NotImplementedError

    def _prefilter(self, raw: Any, request: SearchRequest) -> bool:
        return True

    async def _normalize(self, raw: Any, account: Account, container: Container, token: str) -> MessageResult | None:
        raise NotImplementedError

    # -- HTTP ----------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._settings.http_timeout_seconds,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def _raise_for_status(self, resp: httpx.Response) -> None:
        status = resp.status_code
        if status < 400:
            return
        detail = resp.text[:300]
        if status == 401:
            raise AuthExpiredError(f"{self.platform} rejected the access token", platform=self.platform)
        if status == 403:
            raise PermissionDeniedError(f"{self.platform} permission denied: {detail}", platform=self.platform)
        if status == 404:
            raise ContainerNotFoundError(f"{self.platform} resource not found: {detail}", platform=self.platform)
        if status == 429:
            retry_after = resp.headers.get("Retry-After")
            try:
                delay = float(retry_after) if retry_after else None
            except ValueError:
                delay = None
            raise TransientError(f"{self.platform} rate limited", retry_after=delay, platform=self.platform)
        if status >= 500:
            raise TransientError(f"{self.platform} returned {status}", platform=self.platform)
        raise ConnectorError(f"{self.platform} request failed ({status}): {detail}", platform=self.platform)

    def _check_payload(self, payload: dict[str, Any]) -> None:
        """Raise for application-level errors carried in a 2xx body."""

    def _parse_response(self, resp: httpx.Response) -> dict[str, Any]:
        self._raise_for_status(resp)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ConnectorError(f"{self.platform} returned invalid JSON", platform=self.platform) from exc
        if not isinstance(payload, dict):
            raise ConnectorError(f"{self.platform} returned an unexpected payload", platform=self.platform)
        self._check_payload(payload)
        return payload

    async def _send(self, method: str, url: str, *, token: str | None = None, **kwargs: Any) -> dict[str, Any]:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            resp = await self._http().request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientError(f"{self.platform} request timed out", platform=self.platform) from exc
        except httpx.TransportError as exc:
            raise TransientError(f"{self.platform} network error: {exc}", platform=self.platform) from exc
        return self._parse_response(resp)

    async def _api(self, method: str, url: str, *, token: str | None = None, **kwargs: Any) -> dict[str, Any]:
        attempts = max(1, int(self.option("retry_attempts")))
        base_delay = float(self.option("retry_base_delay"))
        max_delay = float(self.option("retry_max_delay"))
        for attempt in range(attempts):
            try:
                return await self._send(method, url, token=token, **kwargs)
            except TransientError as exc:
                if attempt + 1 >= attempts:
                    raise
                delay = exc.retry_after if exc.retry_after is not None else base_delay * (2**attempt)
                delay = min(delay, max_delay)
                logger.debug("%s %s failed (%s), retrying in %.2fs", method, url, exc, delay)
                await self._sleep(delay)
        raise AssertionError("unreachable")

    # -- auth lifecycle ------------------------------------------------

    def _initial_state(self, account: Account | None) -> AuthState:
        if account is None:
            return AuthState.UNAUTHENTICATED
        if account.status == "error":
            return AuthState.REQUIRES_MANUAL_REAUTH
        if account.access_token and not account.is_expired():
            return AuthState.AUTHENTICATED
        if account.refresh_token:
            return AuthState.TOKEN_EXPIRED
        return AuthState.UNAUTHENTICATED

    def auth_state(self, account_id: str) -> AuthState:
        state = self._auth_states.get(account_id)
        if state is None:
            state = self._initial_state(self._store.get(account_id))
            self._auth_states[account_id] = state
        return state

    def _transition(self, account_id: str, target: AuthState) -> None:
        current = self.auth_state(account_id)
        if target not in _TRANSITIONS[current]:
            raise InvalidAuthTransition(f"{self.platform} account {account_id}: {current.value} -> {target.value}")
        self._auth_states[account_id] = target

    def forget(self, account_id: str) -> None:
        self._auth_states.pop(account_id, None)
        self._refresh_locks.pop(account_id, None)

    def _refresh_lock(self, account_id: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(account_id)
        if lock is None:
            lock = self._refresh_locks[account_id] = asyncio.Lock()
        return lock

    def _require_account(self, account_id: str) -> Account:
        account = self._store.get(account_id)
        if account is None or account.platform != self.platform:
            raise AccountNotFoundError(f"{self.platform} account {account_id} not found")
        return account

    @staticmethod
    def _expires_at(grant: TokenGrant) -> datetime | None:
        if not grant.expires_in:
            return None
        return datetime.now(timezone.utc) + timedelta(seconds=int(grant.expires_in))

    async def authenticate(self, code: str, *, account_id: str | None = None) -> AuthResult:
        if account_id is not None:
            self._transition(account_id, AuthState.AUTHENTICATING)
        try:
            grant = await self._token_provider.exchange_code(code)
            user_info, extra = await self._identity_from_grant(grant)
        except (TokenProviderError, ConnectorError) as exc:
            logger.info("%s authentication failed: %s", self.platform, exc)
            if account_id is not None:
                self._transition(account_id, AuthState.UNAUTHENTICATED)
            return AuthResult(success=False, error=str(exc))
        if account_id is not None:
            self._transition(account_id, AuthState.AUTHENTICATED)
        return AuthResult(
            success=True,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=self._expires_at(grant),
            user_info=user_info,
            extra=extra,
        )

    def _mark_expired(self, account_id: str) -> None:
        if self.auth_state(account_id) is AuthState.AUTHENTICATED:
            self._transition(account_id, AuthState.TOKEN_EXPIRED)

    async def _refresh_locked(self, account: Account) -> AuthResult:
        state = self.auth_state(account.id)
        if state is AuthState.REQUIRES_MANUAL_REAUTH:
            return AuthResult(success=False, error="Re-authorization required", requires_reauth=True)
        if state is not AuthState.TOKEN_EXPIRED:
            return AuthResult(success=False, error=f"Cannot refresh from state {state.value}", requires_reauth=True)

        self._transition(account.id, AuthState.REAUTHORIZING)
        if not account.refresh_token:
            self._transition(account.id, AuthState.REQUIRES_MANUAL_REAUTH)
            return AuthResult(success=False, error="No refresh token available", requires_reauth=True)
        try:
            grant = await self._token_provider.refresh(account.refresh_token)
        except TokenProviderError as exc:
            if exc.requires_reauth:
                self._transition(account.id, AuthState.REQUIRES_MANUAL_REAUTH)
            else:
                self._transition(account.id, AuthState.TOKEN_EXPIRED)
            logger.info("%s token refresh for %s rejected: %s", self.platform, account.id, exc)
            return AuthResult(success=False, error=str(exc), requires_reauth=exc.requires_reauth)
        except TransientError as exc:
            self._transition(account.id, AuthState.TOKEN_EXPIRED)
            logger.info("%s token refresh for %s failed transiently: %s", self.platform, account.id, exc)
            return AuthResult(success=False, error=str(exc))

        refresh_token = grant.refresh_token or account.refresh_token
        expires_at = self._expires_at(grant)
        self._store.update_tokens(
            account.id,
            access_token=grant.access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        self._transition(account.id, AuthState.AUTHENTICATED)
        return AuthResult(
            success=True,
            access_token=grant.access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            account_id=account.id,
        )

    async def refresh_token(self, account_id: str) -> AuthResult:
        try:
            account = self._require_account(account_id)
        except AccountNotFoundError as exc:
            return AuthResult(success=False, error=str(exc))
        async with self._refresh_lock(account_id):
            self._mark_expired(account_id)
            return await self._refresh_locked(account)

    async def _recover_expired(self, account: Account) -> Account:
        """Refresh after a rejected access token; concurrent callers share one refresh."""
        async with self._refresh_lock(account.id):
            current = self._store.get(account.id) or account
            if current.access_token and current.access_token != account.access_token:
                return current
            if self.auth_state(account.id) is AuthState.UNAUTHENTICATED:
                raise ReauthRequiredError("Account is not authenticated", platform=self.platform, account_id=account.id)
            self._mark_expired(account.id)
            result = await self._refresh_locked(current)
        if not result.success:
            if result.requires_reauth:
                raise ReauthRequiredError(result.error or "Re-authorization required", platform=self.platform, account_id=account.id)
            raise AuthExpiredError(result.error or "Token refresh failed", platform=self.platform, account_id=account.id)
        return self._store.get(account.id) or current

    async def _on_search_auth_expired(self, account: Account) -> Account:
        return await self._recover_expired(account)

    async def get_user_info(self, account_id: str) -> UserInfo:
        account = self._require_account(account_id)
        if not account.access_token:
            raise ReauthRequiredError("Account has no access token", platform=self.platform, account_id=account_id)
        try:
            return await self._fetch_user_info(account.access_token)
        except AuthExpiredError:
            account = await self._recover_expired(account)
            return await self._fetch_user_info(account.access_token or "")

    async def validate_connection(self, account_id: str) -> bool:
        try:
            await self.get_user_info(account_id)
        except Exception as exc:
            logger.info("%s connection check for %s failed: %s", self.platform, account_id, exc)
            return False
        return True

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        self._auth_states.clear()
        self._refresh_locks.clear()
        if client is not None and not client.is_closed:
            await client.aclose()

    # -- search --------------------------------------------------------

    async def search(self, request: SearchRequest, accounts: list[Account], context: SearchContext) -> list[MessageResult]:
        if not accounts:
            return []
        outcomes = await asyncio.gather(
            *(self._search_with_recovery(request, account, context) for account in accounts),
            return_exceptions=True,
        )
        results: list[MessageResult] = []
        errors: dict[str, BaseException] = {}
        for account, outcome in zip(accounts, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.warning("%s search failed for account %s: %s", self.platform, account.id, outcome)
                errors[account.id] = outcome
                context.record_account_error(self.platform, account.id, outcome)
                await context.report(self.platform, "error", account_id=account.id, error=str(outcome))
                continue
            results.extend(outcome)
        if errors and len(errors) == len(accounts):
            first = next(iter(errors.values()))
            raise PlatformSearchError(
                f"All {len(accounts)} {self.platform} account(s) failed: {first}",
                errors=errors,
                platform=self.platform,
            )
        return sort_results(results)

    async def _search_with_recovery(
        self,
        request: SearchRequest,
        account: Account,
        context: SearchContext,
    ) -> list[MessageResult]:
        state = self.auth_state(account.id)
        if state is AuthState.REQUIRES_MANUAL_REAUTH:
            raise ReauthRequiredError("Re-authorization required", platform=self.platform, account_id=account.id)
        if state is AuthState.TOKEN_EXPIRED:
            account = await self._recover_expired(account)
        try:
            return await self._search_account(request, account, context)
        except AuthExpiredError:
            logger.info("%s token for %s rejected during search, refreshing", self.platform, account.id)
            account = await self._on_search_auth_expired(account)
            return await self._search_account(request, account, context)

    async def _collect_containers(self, account: Account, token: str, context: SearchContext) -> list[Container]:
        cap = int(self.option("max_containers_per_account"))
        containers: list[Container] = []
        seen_cursors: set[str] = set()
        cursor: str | None = None
        while len(containers) < cap and not context.cancelled:
            page = await self._list_containers(account, token, cursor)
            containers.extend(page.items)
            if not page.next_cursor or page.next_cursor in seen_cursors:
                break
            seen_cursors.add(page.next_cursor)
            cursor = page.next_cursor
        return containers[:cap]

    async def _search_account(self, request: SearchRequest, account: Account, context: SearchContext) -> list[MessageResult]:
        token = await self._resolve_credential(account)
        await context.report(self.platform, "fetching_containers", account_id=account.id)
        containers = await self._collect_containers(account, token, context)
        logger.debug("%s account %s: %d container(s) to search", self.platform, account.id, len(containers))

        cap = int(self.option("max_results_per_account"))
        semaphore = asyncio.Semaphore(max(1, int(self.option("container_concurrency"))))
        found: list[MessageResult] = []
        failures: dict[str, BaseException] = {}
        processed = 0
        await context.report(self.platform, "searching", account_id=account.id, total_containers=len(containers))

        async def run(container: Container) -> None:
            nonlocal processed
            async with semaphore:
                if context.cancelled or len(found) >= cap:
                    return
                try:
                    matches = await self._search_container(request, account, token, container, context, cap - len(found))
                except (AuthExpiredError, ReauthRequiredError):
                    raise
                except (ConnectorError, ValueError) as exc:
                    logger.warning("%s: skipping container %s (%s): %s", self.platform, container.id, container.name, exc)
                    failures[container.id] = exc
                    return
                found.extend(matches)
                processed += 1
                await context.report(
                    self.platform,
                    "searching",
                    account_id=account.id,
                    total_containers=len(containers),
                    processed_containers=processed,
                    found_messages=len(found),
                )

        outcomes = await asyncio.gather(*(run(c) for c in containers), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        if containers and len(failures) == len(containers):
            first = next(iter(failures.values()))
            raise PlatformSearchError(
                f"All {len(containers)} container(s) failed: {first}",
                errors=failures,
                platform=self.platform,
                account_id=account.id,
            )

        unique: dict[str, MessageResult] = {}
        for result in found:
            unique.setdefault(result.id, result)
        results = sort_results(list(unique.values()))[:cap]
        await context.report(
            self.platform,
            "completed",
            account_id=account.id,
            total_containers=len(containers),
            processed_containers=processed,
            found_messages=len(results),
        )
        return results

    async def _search_container(
        self,
        request: SearchRequest,
        account: Account,
        token: str,
        container: Container,
        context: SearchContext,
        budget: int,
    ) -> list[MessageResult]:
        max_pages = int(self.option("max_pages_per_container"))
        matches: list[MessageResult] = []
        cursor: str | None = None
        pages = 0
        while pages < max_pages:
            if context.cancelled:
                break
            page = await self._fetch_messages_page(account, token, container, request, cursor)
            pages += 1
            for raw in page.items:
                if not self._prefilter(raw, request):
                    continue
                result = await self._normalize(raw, account, container, token)
                if result is not None and self.matches(result, request):
                    matches.append(result)
            if len(matches) >= budget or not page.next_cursor:
                break
            cursor = page.next_cursor
        logger.debug("%s container %s: %d page(s), %d match(es)", self.platform, container.id, pages, len(matches))
        return matches

    def matches(self, result: MessageResult, request: SearchRequest) -> bool:
        query = request.query.strip().lower()
        if "keyword" not in self.native_filters and query and query not in result.content.lower():
            return False
        filters = request.filters
        if filters is None:
            return True
        if filters.sender and "sender" not in self.native_filters:
            needle = filters.sender.strip().lower()
            sender = result.sender
            haystack = [sender.name, sender.id, sender.email or "", sender.display_name or ""]
            if not any(needle in value.lower() for value in haystack):
                return False
        if filters.message_type and filters.message_type != "all" and "message_type" not in self.native_filters:
            if result.message_type != filters.message_type:
                return False
        if filters.date_range and "date" not in self.native_filters:
            start, end = filters.date_range.start, filters.date_range.end
            if start is not None and result.timestamp < _aware(start):
                return False
            if end is not None and result.timestamp > _aware(end):
                return False
        return True


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def epoch_seconds(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(_aware(value).timestamp())

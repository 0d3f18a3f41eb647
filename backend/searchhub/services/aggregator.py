from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections import Counter, defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import httpx

from searchhub.connectors.base import BaseConnector, CancelToken, ProgressCallback, SearchContext, sort_results
from searchhub.connectors.factory import create_connector
from searchhub.credentials import Account, CredentialStore, new_account_id
from searchhub.errors import (
    ConnectorNotLoadedError,
    PlatformSearchError,
    ReauthRequiredError,
    RequestValidationError,
    error_kind,
)
from searchhub.schemas import (
    AuthResult,
    CacheStats,
    ConnectorConfig,
    MessageResult,
    MetricsSnapshot,
    Pagination,
    PlatformSearchStatus,
    SearchRequest,
    SearchResponse,
    UserInfo,
)
from searchhub.services.cache import ResultCache
from searchhub.services.metrics import SearchMetrics
from searchhub.settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    config: ConnectorConfig
    connector: BaseConnector
    leases: int = 0
    retired: bool = False


@dataclass
class _Plan:
    targets: dict[str, list[Account]] = field(default_factory=dict)
    skipped: dict[str, list[str]] = field(default_factory=dict)
    requested: list[str] = field(default_factory=list)

    @property
    def platforms(self) -> list[str]:
        return sorted(set(self.targets) | set(self.skipped) | set(self.requested))

    @property
    def account_ids(self) -> list[str]:
        return sorted(account.id for accounts in self.targets.values() for account in accounts)


@dataclass(frozen=True)
class _SearchOutcome:
    results: tuple[MessageResult, ...]
    platform_status: dict[str, PlatformSearchStatus]
    cancelled: bool = False

    def __len__(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> bool:
        return not self.platform_status or any(s.success for s in self.platform_status.values())

    @property
    def cacheable(self) -> bool:
        return not self.cancelled and any(s.success for s in self.platform_status.values())


def fingerprint(request: SearchRequest, plan: _Plan, page: int, limit: int) -> str:
    filters = request.filters.model_dump(mode="json") if request.filters else None
    payload = {
        "query": request.query.strip(),
        "platforms": plan.platforms,
        "accounts": plan.account_ids,
        "filters": filters,
        "page": page,
        "limit": limit,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _explicit_account_ids(request: Any) -> set[str]:
    if not isinstance(request, SearchRequest):
        return set()
    ids = set(request.accounts or [])
    for account_ids in (request.accounts_by_platform or {}).values():
        ids.update(account_ids)
    return ids


class AggregationManager:
    """Owns the connector registry, the result cache and metrics, and runs federated searches."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        settings: Settings | None = None,
        cache: ResultCache | None = None,
        metrics: SearchMetrics | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self._settings = settings or default_settings
        self._store = store
        self._cache = cache or ResultCache(
            max_size=self._settings.cache_max_entries,
            default_ttl=self._settings.cache_ttl_seconds,
        )
        self._metrics = metrics or SearchMetrics()
        self._transport = transport
        self._sleep = sleep
        self._slots: dict[str, _Slot] = {}
        self._configs: dict[str, ConnectorConfig] = {}
        self._active: dict[str, CancelToken] = {}

    @property
    def store(self) -> CredentialStore:
        return self._store

    # -- registry ------------------------------------------------------

    def list_connectors(self) -> list[str]:
        return sorted(self._slots)

    def connector(self, platform: str) -> BaseConnector:
        slot = self._slots.get(platform)
        if slot is None:
            raise ConnectorNotLoadedError(f"Connector {platform} is not loaded")
        return slot.connector

    def in_flight(self, platform: str) -> int:
        slot = self._slots.get(platform)
        return slot.leases if slot else 0

    async def load_connector(self, config: ConnectorConfig) -> None:
        kwargs: dict[str, Any] = {"settings": self._settings, "transport": self._transport}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        connector = create_connector(config, self._store, **kwargs)
        previous = self._slots.get(config.platform)
        self._slots[config.platform] = _Slot(config=config, connector=connector)
        self._configs[config.platform] = config
        if previous is not None:
            await self._retire(previous)
        self._cache.clear()
        logger.info("Loaded %s connector", config.platform)

    async def unload_connector(self, platform: str) -> bool:
        slot = self._slots.pop(platform, None)
        if slot is None:
            return False
        await self._retire(slot)
        self._cache.clear()
        logger.info("Unloaded %s connector (%d search(es) still in flight)", platform, slot.leases)
        return True

    async def reload_connector(self, platform: str) -> bool:
        config = self._configs.get(platform)
        if config is None:
            return False
        await self.unload_connector(platform)
        await self.load_connector(config)
        return True

    async def _retire(self, slot: _Slot) -> None:
        slot.retired = True
        if slot.leases == 0:
            await self._close(slot)

    async def _close(self, slot: _Slot) -> None:
        try:
            await slot.connector.disconnect()
        except Exception:
            logger.warning("Failed to disconnect %s connector", slot.config.platform, exc_info=True)

    @asynccontextmanager
    async def _lease(self, platform: str) -> AsyncIterator[BaseConnector]:
        slot = self._slots.get(platform)
        if slot is None:
            raise ConnectorNotLoadedError(f"Connector {platform} is not loaded")
        slot.leases += 1
        try:
            yield slot.connector
        finally:
            slot.leases -= 1
            if slot.retired and slot.leases == 0:
                await self._close(slot)

    # -- search --------------------------------------------------------

    def _plan(self, request: SearchRequest) -> _Plan:
        loaded = set(self._slots)
        requested = sorted({p.lower().strip() for p in request.platforms or [] if p and p.strip()})
        plan = _Plan(requested=requested)
        targets: dict[str, list[Account]] = defaultdict(list)
        skipped: dict[str, list[str]] = defaultdict(list)

        def place(account: Account) -> None:
            if account.status == "error":
                skipped[account.platform].append(account.id)
            else:
                targets[account.platform].append(account)

        explicit: dict[str, str | None] = {account_id: None for account_id in request.accounts or []}
        for platform, account_ids in (request.accounts_by_platform or {}).items():
            for account_id in account_ids:
                explicit[account_id] = platform.lower().strip()

        if explicit:
            for account_id, platform in explicit.items():
                account = self._store.get(account_id)
                if account is None:
                    logger.warning("Ignoring unknown account %s", account_id)
                    continue
                if platform and account.platform != platform:
                    logger.warning("Account %s belongs to %s, not %s", account_id, account.platform, platform)
                    continue
                if requested and account.platform not in requested:
                    continue
                place(account)
        else:
            platforms = set(requested) if requested else loaded
            for account in self._store.list_accounts():
                if account.platform in platforms and account.status != "disconnected":
                    place(account)

        plan.targets = dict(targets)
        plan.skipped = dict(skipped)
        return plan

    async def search(
        self,
        request: SearchRequest,
        *,
        progress: ProgressCallback | None = None,
        search_id: str | None = None,
    ) -> SearchResponse:
        if not request.query or not request.query.strip():
            raise RequestValidationError("Search query must not be empty")

        search_id = search_id or uuid4().hex
        if search_id in self._active:
            raise RequestValidationError(f"Search {search_id} is already running")
        started = time.perf_counter()
        plan = self._plan(request)
        pagination = request.pagination or Pagination()
        limit = pagination.limit or self._settings.default_page_size
        key = fingerprint(request, plan, pagination.page, limit)

        context = SearchContext(search_id=search_id, progress=progress)
        self._active[search_id] = context.cancel_token
        timer = asyncio.get_running_loop().call_later(
            self._settings.search_timeout_seconds,
            self._on_timeout,
            search_id,
            context.cancel_token,
        )
        logger.info("Search %s started on %s", search_id, ", ".join(plan.platforms) or "no platforms")
        try:
            if self._settings.enable_cache:
                while True:
                    outcome, cached = await self._cache.get_or_fetch(
                        key,
                        lambda: self._execute(request, plan, context),
                        ttl=self._settings.cache_ttl_seconds,
                        request=request,
                        should_store=lambda value: value.cacheable,
                    )
                    # A fetch shared with a search that was cancelled is not ours to return.
                    if not outcome.cancelled or context.cancelled:
                        break
                    logger.info("Search %s joined a cancelled fetch, searching again", search_id)
            else:
                outcome, cached = await self._execute(request, plan, context), False
        finally:
            timer.cancel()
            self._active.pop(search_id, None)

        total = len(outcome.results)
        start = (pagination.page - 1) * limit
        elapsed_ms = (time.perf_counter() - started) * 1000
        response = SearchResponse(
            search_id=search_id,
            results=list(outcome.results[start : start + limit]),
            total_count=total,
            has_more=start + limit < total,
            search_time_ms=elapsed_ms,
            platform_status={name: status.model_copy() for name, status in outcome.platform_status.items()},
            cached=cached,
            cancelled=outcome.cancelled,
        )
        self._metrics.record_search(
            duration_ms=elapsed_ms,
            success=outcome.succeeded,
            cached=cached,
            cancelled=outcome.cancelled,
            platform_status=outcome.platform_status,
        )
        logger.info(
            "Search %s finished: %d result(s), %.0fms, cached=%s, cancelled=%s",
            search_id,
            total,
            elapsed_ms,
            cached,
            outcome.cancelled,
        )
        return response

    async def _execute(self, request: SearchRequest, plan: _Plan, context: SearchContext) -> _SearchOutcome:
        dispatched = await asyncio.gather(*(self._dispatch(platform, plan, request, context) for platform in plan.platforms))

        statuses: dict[str, PlatformSearchStatus] = {}
        merged: dict[tuple[str, str | None, str], MessageResult] = {}
        for platform, results, status in dispatched:
            statuses[platform] = status
            for result in results:
                merged.setdefault((result.platform, result.account_id, result.id), result)

        ordered = tuple(sort_results(list(merged.values())))
        counts = Counter(result.platform for result in ordered)
        for platform, status in statuses.items():
            status.result_count = counts.get(platform, 0)
        return _SearchOutcome(results=ordered, platform_status=statuses, cancelled=context.cancelled)

    async def _dispatch(
        self,
        platform: str,
        plan: _Plan,
        request: SearchRequest,
        context: SearchContext,
    ) -> tuple[str, list[MessageResult], PlatformSearchStatus]:
        started = time.perf_counter()
        accounts = plan.targets.get(platform, [])
        skipped = plan.skipped.get(platform, [])

        def status(**fields: Any) -> PlatformSearchStatus:
            return PlatformSearchStatus(
                platform=platform,
                search_time_ms=(time.perf_counter() - started) * 1000,
                skipped_accounts=list(skipped),
                **fields,
            )

        if platform not in self._slots:
            return platform, [], status(success=False, error=f"Connector {platform} is not loaded", error_kind="not_loaded")
        if not accounts:
            if skipped:
                return platform, [], status(
                    success=False,
                    error="All accounts require re-authorization",
                    error_kind="reauth",
                    requires_reauth=True,
                )
            return platform, [], status(success=True)

        try:
            async with self._lease(platform) as connector:
                results = await connector.search(request, accounts, context)
        except PlatformSearchError as exc:
            self._flag_reauth(exc.errors)
            logger.warning("%s search failed: %s", platform, exc)
            return platform, [], status(
                success=False,
                error=str(exc),
                error_kind=error_kind(exc),
                failed_accounts=sorted(exc.errors),
                requires_reauth=exc.requires_reauth,
            )
        except Exception as exc:
            logger.exception("%s search failed unexpectedly", platform)
            return platform, [], status(success=False, error=str(exc) or exc.__class__.__name__, error_kind=error_kind(exc))

        partial = context.account_errors.get(platform, {})
        self._flag_reauth(partial)
        return platform, results, status(
            success=True,
            failed_accounts=sorted(partial),
            requires_reauth=any(isinstance(e, ReauthRequiredError) for e in partial.values()),
        )

    def _flag_reauth(self, errors: dict[str, BaseException]) -> None:
        for account_id, error in errors.items():
            if isinstance(error, ReauthRequiredError):
                logger.warning("Account %s requires re-authorization", account_id)
                self._store.set_status(account_id, "error")

    def _on_timeout(self, search_id: str, token: CancelToken) -> None:
        logger.warning(
            "Search %s hit the %.0fs timeout, returning partial results",
            search_id,
            self._settings.search_timeout_seconds,
        )
        token.cancel()

    def cancel(self, search_id: str) -> bool:
        token = self._active.get(search_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Search %s cancelled", search_id)
        return True

    def cancel_all(self) -> int:
        tokens = list(self._active.values())
        for token in tokens:
            token.cancel()
        return len(tokens)

    def active_searches(self) -> list[str]:
        return list(self._active)

    # -- accounts ------------------------------------------------------

    def list_accounts(self, platform: str | None = None) -> list[Account]:
        return self._store.list_accounts(platform)

    async def authenticate_platform(self, platform: str, code: str, *, account_id: str | None = None) -> AuthResult:
        platform = platform.lower().strip()
        try:
            async with self._lease(platform) as connector:
                result = await connector.authenticate(code, account_id=account_id)
        except Exception as exc:
            logger.warning("Authentication on %s failed: %s", platform, exc)
            return AuthResult(success=False, error=str(exc))
        if not result.success or result.user_info is None:
            return result

        account = self._store.add(
            Account(
                id=account_id or new_account_id(),
                platform=platform,
                identifier=result.user_info.id,
                display_name=result.user_info.name,
                access_token=result.access_token,
                refresh_token=result.refresh_token,
                expires_at=result.expires_at,
                status="connected",
                extra=dict(result.extra),
            )
        )
        connector.forget(account.id)
        logger.info("Connected %s account %s (%s)", platform, account.id, account.identifier)
        return result.model_copy(update={"account_id": account.id})

    async def refresh_platform_token(self, account_id: str) -> AuthResult:
        account = self._store.get(account_id)
        if account is None:
            return AuthResult(success=False, error=f"Account {account_id} not found", account_id=account_id)
        try:
            async with self._lease(account.platform) as connector:
                result = await connector.refresh_token(account_id)
        except Exception as exc:
            logger.warning("Token refresh for %s failed: %s", account_id, exc)
            return AuthResult(success=False, error=str(exc), account_id=account_id)
        if result.requires_reauth:
            self._store.set_status(account_id, "error")
        elif result.success:
            self._store.set_status(account_id, "connected")
        return result.model_copy(update={"account_id": account_id})

    async def get_user_info(self, account_id: str) -> UserInfo | None:
        account = self._store.get(account_id)
        if account is None:
            return None
        try:
            async with self._lease(account.platform) as connector:
                return await connector.get_user_info(account_id)
        except Exception as exc:
            logger.warning("Fetching user info for %s failed: %s", account_id, exc)
            return None

    async def test_platform_connection(self, account_id: str) -> bool:
        account = self._store.get(account_id)
        if account is None:
            return False
        try:
            async with self._lease(account.platform) as connector:
                ok = await connector.validate_connection(account_id)
        except Exception as exc:
            logger.warning("Connection test for %s failed: %s", account_id, exc)
            ok = False
        if ok:
            self._store.set_status(account_id, "connected")
            slot = self._slots.get(account.platform)
            if slot is not None:
                # a working token supersedes a remembered refresh failure
                slot.connector.forget(account_id)
        elif account.status != "error":
            self._store.set_status(account_id, "disconnected")
        return ok

    async def validate_all_connections(self) -> dict[str, bool]:
        accounts = [a for a in self._store.list_accounts() if a.platform in self._slots]
        outcomes = await asyncio.gather(*(self.test_platform_connection(a.id) for a in accounts))
        return {account.id: ok for account, ok in zip(accounts, outcomes)}

    def remove_account(self, account_id: str) -> bool:
        account = self._store.get(account_id)
        if account is None:
            return False
        slot = self._slots.get(account.platform)
        if slot is not None:
            slot.connector.forget(account_id)
        self._cache.invalidate(lambda request: account_id in _explicit_account_ids(request))
        return self._store.remove(account_id)

    # -- cache & metrics -----------------------------------------------

    def clear_cache(self) -> int:
        return self._cache.clear()

    def get_cache_stats(self) -> CacheStats:
        return self._cache.stats()

    def get_metrics(self) -> MetricsSnapshot:
        return self._metrics.snapshot()

    def reset_metrics(self) -> None:
        self._metrics.reset()
        self._cache.reset_metrics()

    async def shutdown(self) -> None:
        self.cancel_all()
        slots = list(self._slots.values())
        self._slots.clear()
        for slot in slots:
            await self._retire(slot)
        self._cache.clear()
        logger.info("Aggregation manager shut down")

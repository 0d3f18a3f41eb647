from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from searchhub.credentials import Account, MemoryCredentialStore
from searchhub.errors import RequestValidationError
from searchhub.schemas import ConnectorConfig, Pagination, SearchRequest
from searchhub.services.aggregator import AggregationManager

_MESSAGES = "/open-apis/im/v1/messages"


def _lark_account(**overrides) -> Account:
    fields = {"id": "acc1", "platform": "lark", "identifier": "ou_me", "access_token": "u-token"}
    fields.update(overrides)
    return Account(**fields)


def _slack_account(**overrides) -> Account:
    fields = {
        "id": "acc2",
        "platform": "slack",
        "identifier": "T1:U1",
        "access_token": "xoxp-valid",
        "refresh_token": "xoxe-r1",
        "extra": {"team_id": "T1", "team_domain": "acme"},
    }
    fields.update(overrides)
    return Account(**fields)


def _slack_message(ts: str, text: str) -> dict:
    return {"type": "message", "ts": ts, "user": "U1", "text": text}


async def _manager(test_settings, transport, no_sleep, *accounts: Account, platforms=("lark",)) -> AggregationManager:
    manager = AggregationManager(
        MemoryCredentialStore(list(accounts)),
        settings=test_settings,
        transport=transport,
        sleep=no_sleep,
    )
    for platform in platforms:
        await manager.load_connector(ConnectorConfig(platform=platform))
    return manager


def test_order_number_found_in_two_chats(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_support", "om_1", "Customer asked about ORDER-12345 refund", create_time=1700000100000)
    fake_lark.add_message("oc_support", "om_2", "unrelated chatter", create_time=1700000150000)
    fake_lark.add_message("oc_ops", "om_3", "order-12345 shipped today", create_time=1700000200000)
    fake_lark.add_message("oc_ops", "om_4", "lunch?", create_time=1700000250000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        request = SearchRequest(query="order-12345", accounts=["acc1"], pagination=Pagination(page=1, limit=50))
        return await manager.search(request)

    response = asyncio.run(run())

    assert len(response.results) == 2
    assert all("order-12345" in r.content.lower() for r in response.results)
    assert all(r.platform == "lark" for r in response.results)
    assert [r.id for r in response.results] == ["om_3", "om_1"]
    assert response.results[0].sender.name == "User ou_alice"
    assert response.results[0].channel == "chat oc_ops"
    assert response.total_count == 2
    assert response.has_more is False
    assert response.platform_status["lark"].success is True
    assert response.platform_status["lark"].result_count == 2


def test_merged_results_sorted_with_per_platform_counts(test_settings, transport, fake_lark, fake_slack, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "release notes v2", create_time=1700000100000)
    fake_lark.add_message("oc_b", "om_2", "release blocked", create_time=1700000300000)
    fake_slack.add_page(
        "C1",
        [_slack_message("1700000400.000100", "release is out"), _slack_message("1700000200.000100", "release soon")],
    )

    async def run():
        manager = await _manager(
            test_settings, transport, no_sleep, _lark_account(), _slack_account(), platforms=("lark", "slack")
        )
        return await manager.search(SearchRequest(query="release"))

    response = asyncio.run(run())

    timestamps = [r.timestamp for r in response.results]
    assert timestamps == sorted(timestamps, reverse=True)
    assert [r.platform for r in response.results] == ["slack", "lark", "slack", "lark"]
    assert set(response.platform_status) == {"lark", "slack"}
    counts = Counter(r.platform for r in response.results)
    for platform, status in response.platform_status.items():
        assert status.result_count == counts[platform]
    slack_result = next(r for r in response.results if r.platform == "slack")
    assert slack_result.id == "C1:1700000400.000100"
    assert slack_result.deep_link == "https://acme.slack.com/archives/C1/p1700000400000100"


def test_identical_requests_hit_the_cache(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "invoice 42", create_time=1700000100000)
    fake_lark.add_message("oc_b", "om_2", "invoice 43", create_time=1700000200000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        first = await manager.search(SearchRequest(query="invoice"))
        second = await manager.search(SearchRequest(query="invoice"))
        return manager, first, second

    manager, first, second = asyncio.run(run())

    assert fake_lark.calls[_MESSAGES] == 2
    assert first.cached is False
    assert second.cached is True
    assert [r.id for r in second.results] == [r.id for r in first.results]
    assert first.search_id != second.search_id
    assert manager.get_cache_stats().size == 1
    metrics = manager.get_metrics()
    assert metrics.total_searches == 2
    assert metrics.cache_hits == 1
    assert metrics.cache_misses == 1


def test_concurrent_identical_requests_share_one_fetch(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "invoice 42", create_time=1700000100000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        request = SearchRequest(query="invoice")
        return await asyncio.gather(manager.search(request), manager.search(request))

    first, second = asyncio.run(run())

    assert fake_lark.calls[_MESSAGES] == 1
    assert sorted([first.cached, second.cached]) == [False, True]
    assert [r.id for r in first.results] == [r.id for r in second.results] == ["om_1"]


def test_disabled_cache_fetches_every_time(test_settings, transport, fake_lark, no_sleep):
    test_settings.enable_cache = False
    fake_lark.add_message("oc_a", "om_1", "invoice 42", create_time=1700000100000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        await manager.search(SearchRequest(query="invoice"))
        return await manager.search(SearchRequest(query="invoice"))

    response = asyncio.run(run())

    assert response.cached is False
    assert fake_lark.calls[_MESSAGES] == 2


def test_one_failing_container_keeps_platform_successful(test_settings, transport, fake_lark, no_sleep):
    for chat in ("oc_a", "oc_b", "oc_c"):
        fake_lark.add_message(chat, f"om_{chat}", f"budget review {chat}", create_time=1700000100000)
    fake_lark.failing["oc_b"] = 99991663

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        return await manager.search(SearchRequest(query="budget"))

    response = asyncio.run(run())

    status = response.platform_status["lark"]
    assert status.success is True
    assert status.result_count == 2
    assert sorted(r.id for r in response.results) == ["om_oc_a", "om_oc_c"]


def test_all_containers_failing_fails_the_platform(test_settings, transport, fake_lark, no_sleep):
    for chat in ("oc_a", "oc_b", "oc_c"):
        fake_lark.add_message(chat, f"om_{chat}", "budget review", create_time=1700000100000)
        fake_lark.failing[chat] = 99991663

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        response = await manager.search(SearchRequest(query="budget"))
        return manager, response

    manager, response = asyncio.run(run())

    status = response.platform_status["lark"]
    assert status.success is False
    assert status.failed_accounts == ["acc1"]
    assert status.requires_reauth is False
    assert response.results == []
    # failed searches are not cached
    assert manager.get_cache_stats().size == 0
    assert manager.get_metrics().failed_searches == 1


def test_cancel_returns_results_from_completed_containers(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "roadmap draft", create_time=1700000100000)
    fake_lark.add_message("oc_b", "om_2", "roadmap final", create_time=1700000200000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        events = []

        def on_progress(event):
            events.append(event)
            if event.stage == "searching" and event.processed_containers == 1:
                manager.cancel("search-1")

        response = await manager.search(SearchRequest(query="roadmap"), progress=on_progress, search_id="search-1")
        return manager, response, events

    manager, response, events = asyncio.run(run())

    assert response.cancelled is True
    assert [r.id for r in response.results] == ["om_1"]
    assert fake_lark.calls[_MESSAGES] == 1
    assert events[0].stage == "fetching_containers"
    assert manager.get_cache_stats().size == 0
    assert manager.get_metrics().cancelled_searches == 1
    assert manager.cancel("search-1") is False


def test_error_accounts_are_skipped_but_reported(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "anything", create_time=1700000100000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account(status="error"))
        return await manager.search(SearchRequest(query="anything"))

    response = asyncio.run(run())

    status = response.platform_status["lark"]
    assert status.success is False
    assert status.requires_reauth is True
    assert status.skipped_accounts == ["acc1"]
    assert fake_lark.calls[_MESSAGES] == 0


def test_disconnected_accounts_are_not_searched_by_default(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "anything", create_time=1700000100000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account(status="disconnected"))
        default = await manager.search(SearchRequest(query="anything"))
        explicit = await manager.search(SearchRequest(query="anything", accounts=["acc1"]))
        return default, explicit

    default, explicit = asyncio.run(run())

    assert default.platform_status == {}
    assert default.results == []
    assert [r.id for r in explicit.results] == ["om_1"]


def test_expired_token_is_refreshed_during_search(test_settings, transport, fake_slack, no_sleep):
    fake_slack.add_page("C1", [_slack_message("1700000100.000100", "quarterly report")])

    async def run():
        manager = await _manager(
            test_settings, transport, no_sleep, _slack_account(access_token="xoxp-stale"), platforms=("slack",)
        )
        response = await manager.search(SearchRequest(query="report"))
        return manager, response

    manager, response = asyncio.run(run())

    assert response.platform_status["slack"].success is True
    assert [r.id for r in response.results] == ["C1:1700000100.000100"]
    assert fake_slack.calls["oauth.v2.access"] == 1
    account = manager.store.get("acc2")
    assert account.access_token == "xoxp-rotated"
    assert account.refresh_token == "xoxe-rotated"
    assert account.status == "connected"


def test_dead_refresh_token_marks_account_for_reauth(test_settings, transport, fake_slack, no_sleep):
    fake_slack.add_page("C1", [_slack_message("1700000100.000100", "quarterly report")])

    async def run():
        manager = await _manager(
            test_settings,
            transport,
            no_sleep,
            _slack_account(access_token="xoxp-stale", refresh_token="xoxe-dead"),
            platforms=("slack",),
        )
        response = await manager.search(SearchRequest(query="report"))
        return manager, response

    manager, response = asyncio.run(run())

    status = response.platform_status["slack"]
    assert status.success is False
    assert status.requires_reauth is True
    assert status.failed_accounts == ["acc2"]
    assert manager.store.get("acc2").status == "error"


def test_requested_platform_without_connector_is_reported(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "ticket", create_time=1700000100000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        return await manager.search(SearchRequest(query="ticket", platforms=["lark", "gmail"]))

    response = asyncio.run(run())

    assert set(response.platform_status) == {"lark", "gmail"}
    assert response.platform_status["lark"].success is True
    assert response.platform_status["gmail"].success is False
    assert "not loaded" in response.platform_status["gmail"].error
    assert all(r.platform == "lark" for r in response.results)


def test_empty_query_is_rejected(test_settings, transport, no_sleep):
    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        await manager.search(SearchRequest(query="   "))

    with pytest.raises(RequestValidationError):
        asyncio.run(run())


def test_pagination_slices_the_merged_list(test_settings, transport, fake_lark, no_sleep):
    for index in range(3):
        fake_lark.add_message("oc_a", f"om_{index}", f"sprint {index}", create_time=1700000100000 + index * 1000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        first = await manager.search(SearchRequest(query="sprint", pagination=Pagination(page=1, limit=2)))
        second = await manager.search(SearchRequest(query="sprint", pagination=Pagination(page=2, limit=2)))
        return first, second

    first, second = asyncio.run(run())

    assert [r.id for r in first.results] == ["om_2", "om_1"]
    assert first.has_more is True
    assert [r.id for r in second.results] == ["om_0"]
    assert second.has_more is False
    assert first.total_count == second.total_count == 3


def test_reload_waits_for_in_flight_search(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "standup notes", create_time=1700000100000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        old = manager.connector("lark")
        seen = {}

        async def on_progress(event):
            if event.stage == "fetching_containers" and "reloaded" not in seen:
                seen["reloaded"] = await manager.reload_connector("lark")
                seen["old_client_open"] = old._client is not None and not old._client.is_closed
                seen["replaced"] = manager.connector("lark") is not old

        response = await manager.search(SearchRequest(query="standup"), progress=on_progress)
        return manager, old, seen, response

    manager, old, seen, response = asyncio.run(run())

    assert seen == {"reloaded": True, "old_client_open": True, "replaced": True}
    assert [r.id for r in response.results] == ["om_1"]
    assert old._client is None
    assert manager.in_flight("lark") == 0


def test_unload_drops_connector_and_cache(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "handover", create_time=1700000100000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        await manager.search(SearchRequest(query="handover"))
        before = manager.get_cache_stats().size
        unloaded = await manager.unload_connector("lark")
        again = await manager.unload_connector("lark")
        return manager, before, unloaded, again

    manager, before, unloaded, again = asyncio.run(run())

    assert before == 1
    assert unloaded is True
    assert again is False
    assert manager.list_connectors() == []
    assert manager.get_cache_stats().size == 0


def test_authenticate_stores_account_and_reuses_it(test_settings, transport, fake_slack, no_sleep):
    async def run():
        manager = await _manager(test_settings, transport, no_sleep, platforms=("slack",))
        first = await manager.authenticate_platform("slack", "code-1")
        second = await manager.authenticate_platform("slack", "code-2")
        return manager, first, second

    manager, first, second = asyncio.run(run())

    assert first.success is True
    assert first.user_info.id == "T1:U1"
    assert first.user_info.workspace == "Acme"
    assert first.account_id == second.account_id
    accounts = manager.list_accounts("slack")
    assert len(accounts) == 1
    assert accounts[0].access_token == "xoxp-rotated"
    assert accounts[0].extra == {"team_id": "T1", "user_id": "U1", "team_domain": "acme"}


def test_authenticate_on_unloaded_platform_fails_softly(test_settings, transport, no_sleep):
    async def run():
        manager = await _manager(test_settings, transport, no_sleep, platforms=())
        return await manager.authenticate_platform("slack", "code-1")

    result = asyncio.run(run())

    assert result.success is False
    assert "not loaded" in result.error


def test_refresh_without_refresh_token_requires_reauth(test_settings, transport, no_sleep):
    async def run():
        manager = await _manager(
            test_settings, transport, no_sleep, _slack_account(refresh_token=None), platforms=("slack",)
        )
        result = await manager.refresh_platform_token("acc2")
        return manager, result

    manager, result = asyncio.run(run())

    assert result.success is False
    assert result.requires_reauth is True
    assert manager.store.get("acc2").status == "error"


def test_refresh_with_valid_token_rotates_the_pair(test_settings, transport, fake_slack, no_sleep):
    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _slack_account(), platforms=("slack",))
        result = await manager.refresh_platform_token("acc2")
        return manager, result

    manager, result = asyncio.run(run())

    assert result.success is True
    assert (result.access_token, result.refresh_token) == ("xoxp-rotated", "xoxe-rotated")
    assert result.expires_at is not None
    assert manager.store.get("acc2").access_token == "xoxp-rotated"


def test_connection_checks_update_account_status(test_settings, transport, no_sleep):
    async def run():
        manager = await _manager(
            test_settings,
            transport,
            no_sleep,
            _slack_account(),
            _slack_account(id="acc3", identifier="T1:U2", access_token="xoxp-revoked", refresh_token=None),
            platforms=("slack",),
        )
        outcome = await manager.validate_all_connections()
        info = await manager.get_user_info("acc2")
        return manager, outcome, info

    manager, outcome, info = asyncio.run(run())

    assert outcome == {"acc2": True, "acc3": False}
    assert manager.store.get("acc2").status == "connected"
    assert manager.store.get("acc3").status == "disconnected"
    assert info.name == "alice"


def test_remove_account(test_settings, transport, no_sleep):
    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        return manager, manager.remove_account("acc1"), manager.remove_account("acc1")

    manager, removed, again = asyncio.run(run())

    assert removed is True
    assert again is False
    assert manager.list_accounts() == []


def test_reset_metrics_clears_search_and_cache_counters(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "retro", create_time=1700000100000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        await manager.search(SearchRequest(query="retro"))
        await manager.search(SearchRequest(query="retro"))
        manager.reset_metrics()
        return manager

    manager = asyncio.run(run())

    metrics = manager.get_metrics()
    assert metrics.total_searches == 0
    assert metrics.platform_stats == {}
    stats = manager.get_cache_stats()
    assert (stats.hits, stats.misses) == (0, 0)
    assert stats.size == 1


def test_cancelling_one_search_does_not_cut_short_its_twin(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "roadmap draft", create_time=1700000100000)
    fake_lark.add_message("oc_b", "om_2", "roadmap final", create_time=1700000200000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        request = SearchRequest(query="roadmap")

        def on_progress(event):
            if event.stage == "searching" and event.processed_containers == 1:
                manager.cancel("first")

        return await asyncio.gather(
            manager.search(request, progress=on_progress, search_id="first"),
            manager.search(request, search_id="second"),
        )

    first, second = asyncio.run(run())

    assert first.cancelled is True
    assert [r.id for r in first.results] == ["om_1"]
    assert second.cancelled is False
    assert second.cached is False
    assert [r.id for r in second.results] == ["om_2", "om_1"]
    # the second search ran its own fetch after the shared one was cancelled
    assert fake_lark.calls[_MESSAGES] == 3


def test_search_id_already_running_is_rejected(test_settings, transport, fake_lark, no_sleep):
    fake_lark.add_message("oc_a", "om_1", "roadmap", create_time=1700000100000)

    async def run():
        manager = await _manager(test_settings, transport, no_sleep, _lark_account())
        return await asyncio.gather(
            manager.search(SearchRequest(query="roadmap"), search_id="same"),
            manager.search(SearchRequest(query="roadmap"), search_id="same"),
            return_exceptions=True,
        )

    first, second = asyncio.run(run())

    assert [r.id for r in first.results] == ["om_1"]
    assert isinstance(second, RequestValidationError)


def test_passing_connection_check_clears_failed_refresh(test_settings, transport, fake_slack, no_sleep):
    fake_slack.add_page("C1", [_slack_message("1700000100.000100", "quarterly report")])

    async def run():
        manager = await _manager(
            test_settings, transport, no_sleep, _slack_account(refresh_token="xoxe-dead"), platforms=("slack",)
        )
        refreshed = await manager.refresh_platform_token("acc2")
        status_after_refresh = manager.store.get("acc2").status
        checked = await manager.test_platform_connection("acc2")
        response = await manager.search(SearchRequest(query="report"))
        return manager, refreshed, status_after_refresh, checked, response

    manager, refreshed, status_after_refresh, checked, response = asyncio.run(run())

    assert refreshed.requires_reauth is True
    assert status_after_refresh == "error"
    assert checked is True
    assert response.platform_status["slack"].success is True
    assert [r.id for r in response.results] == ["C1:1700000100.000100"]
    assert manager.store.get("acc2").status == "connected"


def test_failed_platforms_carry_an_error_kind(test_settings, transport, fake_lark, fake_slack, no_sleep):
    for chat in ("oc_a", "oc_b"):
        fake_lark.add_message(chat, f"om_{chat}", "budget review", create_time=1700000100000)
        fake_lark.failing[chat] = 99991663
    fake_slack.add_page("C1", [_slack_message("1700000100.000100", "budget")])

    async def run():
        manager = await _manager(
            test_settings,
            transport,
            no_sleep,
            _lark_account(),
            _slack_account(access_token="xoxp-stale", refresh_token="xoxe-dead"),
            platforms=("lark", "slack"),
        )
        return await manager.search(SearchRequest(query="budget", platforms=["lark", "slack", "gmail"]))

    response = asyncio.run(run())

    assert response.platform_status["lark"].error_kind == "permission"
    assert response.platform_status["slack"].error_kind == "reauth"
    assert response.platform_status["gmail"].error_kind == "not_loaded"

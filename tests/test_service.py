import asyncio

import pytest

from simquery.service import QueryService, validate_identifier
from simquery.workflows.errors import AuthFailure, InvalidInput, NoData, Unavailable

from fakes import ICCID, NO_DATA_PAGE, OTHER_ICCID, FakeLoginDriver, ScriptedFetcher, crm_page, make_runtime


@pytest.mark.parametrize(
    "raw",
    ["12345", "898520000123456789", "898520000123456789012", "8985200001234567a90", " 8985200001234567890", "８９８５２００００１２３４５６７８９０"],
)
def test_validate_identifier_rejects_bad_shapes(raw):
    with pytest.raises(InvalidInput):
        validate_identifier(raw)


def test_validate_identifier_accepts_19_and_20_digits():
    assert validate_identifier(ICCID) == ICCID
    assert validate_identifier(OTHER_ICCID) == OTHER_ICCID


def test_short_identifier_is_invalid_input_without_side_effects():
    runtime = make_runtime()
    service = QueryService(runtime)

    outcome = asyncio.run(service.query_sim("12345"))

    assert outcome.http_status == 400
    assert outcome.outcome == "badRequest"
    assert "19-20 digits" in outcome.body["suggestion"]
    assert runtime.authenticator.driver.calls == 0
    assert runtime.http_fetcher.calls == []
    assert len(runtime.failures) == 0
    assert runtime.guard.depth == 0


def test_empty_identifier_message():
    service = QueryService(make_runtime())

    outcome = asyncio.run(service.query_sim(""))

    assert outcome.body["error"] == "ICCID cannot be empty"
    assert outcome.body["code"] == "invalid_input"


def test_successful_query_payload():
    service = QueryService(make_runtime([crm_page(card_type="Prepaid 4G", usage="10.5")]))

    async def scenario():
        try:
            return await service.query_sim(ICCID)
        finally:
            await service.close()

    outcome = asyncio.run(scenario())

    assert outcome.ok
    assert outcome.http_status == 200
    assert outcome.body["iccid"] == ICCID
    assert outcome.body["cardType"] == "Prepaid 4G"
    assert outcome.body["usageMB"] == "10.5"
    assert outcome.body["rawData"].startswith("<html>")


def test_no_data_maps_to_not_found():
    runtime = make_runtime([NO_DATA_PAGE], [NO_DATA_PAGE])
    service = QueryService(runtime)

    async def scenario():
        try:
            return await service.query_sim(ICCID)
        finally:
            await service.close()

    outcome = asyncio.run(scenario())

    assert outcome.http_status == 404
    assert outcome.outcome == "notFound"
    assert isinstance(outcome.error, NoData)
    assert runtime.failures.get(ICCID) == 1


def test_unexpected_error_becomes_unavailable():
    runtime = make_runtime([RuntimeError("parser exploded")])
    service = QueryService(runtime)

    async def scenario():
        try:
            return await service.query_sim(ICCID)
        finally:
            await service.close()

    outcome = asyncio.run(scenario())

    assert outcome.http_status == 500
    assert isinstance(outcome.error, Unavailable)
    assert "parser exploded" in outcome.body["details"]
    assert runtime.failures.get(ICCID) == 0


def test_concurrent_queries_run_one_at_a_time_in_arrival_order():
    events = []
    runtime = make_runtime(events=events)
    runtime.http_fetcher = ScriptedFetcher("http", [crm_page()], events=events, delay=0.01)
    service = QueryService(runtime)
    identifiers = [f"898520000123456789{i}" for i in range(5)]

    async def scenario():
        try:
            return await asyncio.gather(*(service.query_sim(i) for i in identifiers))
        finally:
            await service.close()

    outcomes = asyncio.run(scenario())

    assert all(outcome.ok for outcome in outcomes)
    fetch_events = [e for e in events if e[0].startswith("http")]
    expected = []
    for identifier in identifiers:
        expected.extend([("http-start", identifier), ("http-end", identifier)])
    assert fetch_events == expected
    assert runtime.authenticator.driver.calls == 1


def test_health_reports_runtime_state():
    runtime = make_runtime()
    service = QueryService(runtime)

    async def scenario():
        await service.query_sim(ICCID)
        health = service.health()
        await service.close()
        return health

    health = asyncio.run(scenario())

    assert health["status"] == "ok"
    assert health["cache_entries"] == 1
    assert health["session_valid"] is True
    assert health["queue_depth"] == 0
    assert health["uptime"] >= 0


def test_reset_failures_single_and_all():
    runtime = make_runtime()
    service = QueryService(runtime)
    runtime.failures.increment(ICCID)
    runtime.failures.increment(OTHER_ICCID)

    assert service.reset_failures(ICCID) == 1
    assert runtime.failures.get(ICCID) == 0
    assert service.reset_failures() == 1
    assert len(runtime.failures) == 0


def test_preload_logs_in_once():
    runtime = make_runtime()
    service = QueryService(runtime)

    async def scenario():
        await service.start()
        await service.close()

    asyncio.run(scenario())

    assert runtime.authenticator.driver.calls == 1
    assert runtime.sessions.current is not None


def test_preload_failure_is_not_fatal():
    driver = FakeLoginDriver([AuthFailure("bad password")] * 3)
    runtime = make_runtime(driver=driver)
    service = QueryService(runtime)

    async def scenario():
        await service.start()
        await service.close()

    asyncio.run(scenario())

    assert driver.calls == 3
    assert runtime.sessions.current is None


def test_close_closes_fetchers():
    runtime = make_runtime()
    service = QueryService(runtime)

    asyncio.run(service.close())

    assert runtime.http_fetcher.closed
    assert runtime.browser_fetcher.closed

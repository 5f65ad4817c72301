from simquery.workflows.extract import QueryResult
from simquery.workflows.result_cache import ResultCache

from fakes import FakeClock


def _result(iccid: str) -> QueryResult:
    return QueryResult(iccid=iccid, status="Active")


def test_entry_expires_after_ttl():
    clock = FakeClock()
    cache = ResultCache(ttl=100, max_entries=10, clock=clock)
    cache.put("a", _result("a"))

    clock.advance(99)
    assert cache.get("a") is not None
    clock.advance(1)
    assert cache.get("a") is None
    assert len(cache) == 0


def test_ceiling_clears_everything_then_inserts():
    cache = ResultCache(ttl=100, max_entries=2, clock=FakeClock())
    cache.put("a", _result("a"))
    cache.put("b", _result("b"))

    cache.put("c", _result("c"))

    assert len(cache) == 1
    assert "c" in cache
    assert "a" not in cache


def test_overwriting_existing_key_at_ceiling_keeps_others():
    cache = ResultCache(ttl=100, max_entries=2, clock=FakeClock())
    cache.put("a", _result("a"))
    cache.put("b", _result("b"))

    cache.put("a", _result("a"))

    assert len(cache) == 2

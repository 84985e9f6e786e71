import json

import aiohttp
import pytest

from number_feed import CurrentNumberSource, FeedError, parse_current_number

KEY = "目前號碼"


def record(number, upd):
    return {"UpdDate": upd, "detail_json": json.dumps({"selections": {KEY: number}})}


class FakeClock:
    def __init__(self, t: float = 1000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


class FakeFetch:
    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def make_source(fetch, clock=None):
    return CurrentNumberSource("http://feed.invalid", KEY, ttl=60, timeout=5, clock=clock or FakeClock(), fetch=fetch)


def test_parse_picks_most_recently_updated_record():
    records = [record(1030, 10), record(1042, 30), record(1035, 20)]
    assert parse_current_number(records, KEY) == 1042


def test_parse_accepts_numeric_strings():
    assert parse_current_number([record("1044", 1)], KEY) == 1044


def test_parse_accepts_whole_floats():
    assert parse_current_number([record(1040.0, 1)], KEY) == 1040
    with pytest.raises(FeedError):
        parse_current_number([record(1040.5, 1)], KEY)


@pytest.mark.parametrize(
    "records",
    [
        [],
        None,
        [{"UpdDate": 1}],
        [{"UpdDate": 1, "detail_json": "not json"}],
        [{"UpdDate": 1, "detail_json": json.dumps({"selections": {}})}],
        [record("abc", 1)],
    ],
)
def test_parse_rejects_unusable_feeds(records):
    with pytest.raises(FeedError):
        parse_current_number(records, KEY)


def test_second_call_within_ttl_is_served_from_cache(run):
    clock = FakeClock()
    fetch = FakeFetch([record(1040, 1)])
    source = make_source(fetch, clock)

    assert run(source.get_current_number()) == 1040
    clock.t += 30
    assert run(source.get_current_number()) == 1040
    assert fetch.calls == 1


def test_cache_expires_after_ttl(run):
    clock = FakeClock()
    fetch = FakeFetch([record(1040, 1)], [record(1041, 2)])
    source = make_source(fetch, clock)

    run(source.get_current_number())
    clock.t += 60
    assert run(source.get_current_number()) == 1041
    assert fetch.calls == 2


def test_empty_feed_is_unavailable_not_zero(run):
    source = make_source(FakeFetch([]))
    assert run(source.get_current_number()) is None


def test_failure_does_not_serve_stale_value(run):
    clock = FakeClock()
    fetch = FakeFetch([record(1040, 1)], aiohttp.ClientConnectionError("down"))
    source = make_source(fetch, clock)

    assert run(source.get_current_number()) == 1040
    clock.t += 120
    assert run(source.get_current_number()) is None
    assert source.cache.value == 1040


def test_concurrent_cold_callers_share_one_fetch(run):
    import asyncio

    fetch = FakeFetch([record(1040, 1)])
    source = make_source(fetch)

    async def both():
        return await asyncio.gather(source.get_current_number(), source.get_current_number())

    assert run(both()) == [1040, 1040]
    assert fetch.calls == 1

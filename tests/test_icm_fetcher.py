import logging

import httpx
import pytest

from app.core.errors import LockLost, PermanentFetchError
from app.core.timeutils import to_epoch_seconds
from app.models.icm_update_state import UpdateProgress
from app.services.icm_fetcher import IcmMessageFetcher, extract_timestamp, to_raw_message

from tests.conftest import NOW

T = to_epoch_seconds(NOW)
HOUR = 3600


def msg(ts, src="43114", dst="1234", nested=True, **extra):
    m = {"messageId": f"m-{ts}-{src}-{dst}", "sourceEvmChainId": src, "destinationEvmChainId": dst}
    if ts is not None:
        if nested:
            m["sourceTransaction"] = {"timestamp": ts}
        else:
            m["timestamp"] = ts
    m.update(extra)
    return m


def make_fetcher(handler, **overrides):
    sleeps = []
    opts = dict(
        base_url="https://glacier.test/v1",
        api_key="test-key",
        network="mainnet",
        page_size=3,
        page_delay_seconds=1.0,
        max_retries=3,
        backoff_base_seconds=1.0,
        backoff_max_seconds=10.0,
        heartbeat_every_pages=10,
        exhaustive=False,
    )
    opts.update(overrides)
    fetcher = IcmMessageFetcher(transport=httpx.MockTransport(handler), sleep=sleeps.append, **opts)
    return fetcher, sleeps


def pages_handler(pages, requests):
    """Sirve pages[i] según pageToken ("p<i>")."""

    def handler(request):
        requests.append(request)
        token = request.url.params.get("pageToken")
        idx = int(token[1:]) if token else 0
        body = {"messages": pages[idx]}
        if idx + 1 < len(pages):
            body["nextPageToken"] = f"p{idx + 1}"
        return httpx.Response(200, json=body)

    return handler


def always_owned():
    return True


def test_extract_timestamp_prefers_source_transaction_and_normalizes_ms():
    assert extract_timestamp({"sourceTransaction": {"timestamp": T * 1000}, "timestamp": 5}) == T
    assert extract_timestamp({"timestamp": T}) == T
    assert extract_timestamp({"sourceTransaction": {}, "timestamp": str(T)}) == T
    assert extract_timestamp({}) is None


def test_to_raw_message_falls_back_to_chain_id_fields():
    raw = to_raw_message({"sourceChainId": "abc", "destinationChainId": 99, "timestamp": T})
    assert raw.source_chain_id == "abc"
    assert raw.destination_chain_id == "99"
    assert raw.timestamp == T


def test_early_termination_on_first_old_message():
    requests = []
    pages = [[msg(T), msg(T - HOUR), msg(T - 25 * HOUR)], [msg(T - 2 * HOUR)]]
    fetcher, sleeps = make_fetcher(pages_handler(pages, requests))

    out = fetcher.fetch(24, "daily", always_owned, now=NOW)

    assert [m.timestamp for m in out] == [T, T - HOUR]
    assert len(requests) == 1
    assert sleeps == []

    params = requests[0].url.params
    assert params["network"] == "mainnet"
    assert params["pageSize"] == "3"
    assert params["startTime"] == str(T - 24 * HOUR)
    assert params["endTime"] == str(T)
    assert "pageToken" not in params
    assert requests[0].headers["x-glacier-api-key"] == "test-key"


def test_millisecond_timestamps_are_normalized():
    requests = []
    pages = [[msg(T * 1000), msg((T - HOUR) * 1000, nested=False), msg((T - 30 * HOUR) * 1000)]]
    fetcher, _ = make_fetcher(pages_handler(pages, requests))

    out = fetcher.fetch(24, "daily", always_owned, now=NOW)
    assert [m.timestamp for m in out] == [T, T - HOUR]


def test_messages_without_timestamp_are_included():
    requests = []
    pages = [[msg(None), msg(T - HOUR)]]
    fetcher, _ = make_fetcher(pages_handler(pages, requests))

    out = fetcher.fetch(24, "daily", always_owned, now=NOW)
    assert len(out) == 2
    assert out[0].timestamp is None


def test_paginates_with_delay_between_pages():
    requests = []
    pages = [
        [msg(T), msg(T - 60), msg(T - 120)],
        [msg(T - HOUR), msg(T - 48 * HOUR)],
    ]
    fetcher, sleeps = make_fetcher(pages_handler(pages, requests))

    out = fetcher.fetch(24, "daily", always_owned, now=NOW)

    assert len(out) == 4
    assert len(requests) == 2
    assert requests[1].url.params["pageToken"] == "p1"
    assert sleeps == [1.0]


def test_retries_server_errors_with_backoff():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] <= 2:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, json={"messages": [msg(T)]})

    fetcher, sleeps = make_fetcher(handler)
    out = fetcher.fetch(24, "daily", always_owned, now=NOW)

    assert len(out) == 1
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]


def test_retries_network_errors():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json={"messages": [msg(T)]})

    fetcher, sleeps = make_fetcher(handler)
    out = fetcher.fetch(24, "daily", always_owned, now=NOW)

    assert len(out) == 1
    assert sleeps == [1.0]


def test_rate_limited_page_is_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, text="too many requests")
        return httpx.Response(200, json={"messages": [msg(T), msg(T - 60)]})

    fetcher, sleeps = make_fetcher(handler)
    out = fetcher.fetch(24, "daily", always_owned, now=NOW)

    assert len(out) == 2
    assert calls["n"] == 2
    assert sleeps == [1.0]


def test_timeouts_are_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] <= 2:
            raise httpx.ReadTimeout("read timed out", request=request)
        return httpx.Response(200, json={"messages": [msg(T)]})

    fetcher, sleeps = make_fetcher(handler)
    out = fetcher.fetch(24, "daily", always_owned, now=NOW)

    assert len(out) == 1
    assert calls["n"] == 3
    assert sleeps == [1.0, 2.0]


def test_client_error_is_permanent_without_retry():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(404, text="not found")

    fetcher, sleeps = make_fetcher(handler)
    with pytest.raises(PermanentFetchError) as ei:
        fetcher.fetch(24, "daily", always_owned, now=NOW)

    assert ei.value.status_code == 404
    assert ei.value.page == 1
    assert ei.value.attempts == 1
    assert calls["n"] == 1
    assert sleeps == []


def test_retries_exhausted_become_permanent():
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    fetcher, sleeps = make_fetcher(handler)
    with pytest.raises(PermanentFetchError) as ei:
        fetcher.fetch(24, "daily", always_owned, now=NOW)

    assert ei.value.status_code == 502
    assert ei.value.attempts == 4
    assert sleeps == [1.0, 2.0, 4.0]


def test_backoff_is_capped():
    fetcher, _ = make_fetcher(lambda r: httpx.Response(200, json={}))
    assert [fetcher.backoff_delay(a) for a in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_lock_lost_aborts_before_next_page():
    requests = []
    pages = [[msg(T)], [msg(T - 60)], [msg(T - 120)]]
    fetcher, _ = make_fetcher(pages_handler(pages, requests))

    answers = iter([True, False])
    with pytest.raises(LockLost) as ei:
        fetcher.fetch(24, "daily", lambda: next(answers), now=NOW)

    assert ei.value.page == 2
    assert len(requests) == 1


def test_heartbeat_every_n_pages_and_at_the_end():
    requests = []
    pages = [[msg(T - i)] for i in range(25)]
    fetcher, _ = make_fetcher(pages_handler(pages, requests), page_delay_seconds=0)

    beats = []
    out = fetcher.fetch(24, "daily", always_owned, heartbeat=beats.append, now=NOW)

    assert len(out) == 25
    assert beats == [
        UpdateProgress(pages_fetched=10, messages_collected=10),
        UpdateProgress(pages_fetched=20, messages_collected=20),
        UpdateProgress(pages_fetched=25, messages_collected=25),
    ]


def test_page_ceiling_stops_pagination():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"messages": [msg(T)], "nextPageToken": "again"})

    fetcher, _ = make_fetcher(handler, page_delay_seconds=0)
    out = fetcher.fetch(24, "daily", always_owned, now=NOW, max_pages=3)

    assert len(requests) == 3
    assert len(out) == 3


def test_exhaustive_mode_tolerates_out_of_order_pages(caplog):
    pages = [
        [msg(T), msg(T - 30 * HOUR), msg(T - HOUR)],
        [msg(T - 40 * HOUR), msg(T - 50 * HOUR)],
        [msg(T - 2 * HOUR)],
    ]

    requests = []
    strict, _ = make_fetcher(pages_handler(pages, requests))
    assert len(strict.fetch(24, "daily", always_owned, now=NOW)) == 1
    assert len(requests) == 1

    requests = []
    exhaustive, _ = make_fetcher(pages_handler(pages, requests), exhaustive=True)
    with caplog.at_level(logging.WARNING, logger="icmstats.fetcher"):
        out = exhaustive.fetch(24, "daily", always_owned, now=NOW)

    assert [m.timestamp for m in out] == [T, T - HOUR]
    # corta en la primera página donde todo es viejo
    assert len(requests) == 2
    assert "ordering violations" in caplog.text

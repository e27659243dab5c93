import asyncio

import httpx

from stock_agent.schemas.analysis import CompanyRef
from stock_agent.services.market_data.tencent import (
    TencentMarketData,
    format_ticker_for_tencent,
    month_to_date_change,
    parse_quote,
    rolling_change,
)

QUOTE_URL = "https://qt.gtimg.cn/q="
KLINE_URL = "https://web.ifzq.gtimg.cn/appstock/app/fqkline/get"

DAILY = [["2024-04-30", "0", "100.00"]] + [[f"2024-05-0{day}", "0", "150.00"] for day in range(1, 10)]


def _quote(code, name, exchange_code, price):
    fields = ["200", name, exchange_code, price] + ["0"] * 30
    return f'v_{code}="{"~".join(fields)}";'


def _handler(request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    if url.startswith(QUOTE_URL):
        code = url[len(QUOTE_URL) :]
        if code == "usAAPL":
            return httpx.Response(200, content=_quote(code, "Apple", "AAPL.OQ", "200.00").encode("gbk"))
        if code == "hk00700":
            return httpx.Response(200, content=_quote(code, "腾讯控股", "00700", "300.00").encode("gbk"))
        if code == "usBROKEN":
            return httpx.Response(200, content=b'v_usBROKEN="1~2~3";')
        return httpx.Response(200, content=b'v_pv_none_match="1";')
    if url.startswith(KLINE_URL):
        code = request.url.params["param"].split(",")[0]
        return httpx.Response(200, json={"data": {code: {"qfqday": DAILY}}})
    return httpx.Response(404)


def _provider():
    client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    return TencentMarketData(quote_url=QUOTE_URL, kline_url=KLINE_URL, client=client)


def test_format_ticker_for_tencent():
    assert format_ticker_for_tencent("aapl", "NASDAQ") == "usAAPL"
    assert format_ticker_for_tencent("700", "HKEX") == "hk00700"
    assert format_ticker_for_tencent("600519", "SSE") == "sh600519"
    assert format_ticker_for_tencent("000001", "SZSE") == "sz000001"
    assert format_ticker_for_tencent("XYZ", "UNKNOWN") == "usXYZ"


def test_parse_quote_handles_missing_payload():
    assert parse_quote('v_usAAPL="1~Apple~AAPL.OQ";') == ["1", "Apple", "AAPL.OQ"]
    assert parse_quote("garbage") == []


def test_change_calculations():
    assert rolling_change(DAILY, 200.0, 5) == "+33.33%"
    assert rolling_change(DAILY, 200.0, 50) == "0.00%"
    assert month_to_date_change(DAILY, 200.0) == "+100.00%"
    assert month_to_date_change(DAILY[1:], 200.0) == "0.00%"
    assert month_to_date_change([], 200.0) == "0.00%"


def test_search_ticker_finds_us_listing():
    async def scenario():
        provider = _provider()
        try:
            return await provider.search_ticker("aapl"), await provider.search_ticker("unknown")
        finally:
            await provider.aclose()

    found, missing = asyncio.run(scenario())

    assert found == CompanyRef(name="Apple", ticker="AAPL", exchange="NASDAQ")
    assert missing is None


def test_get_financial_data_builds_profile():
    async def scenario():
        provider = _provider()
        try:
            return await provider.get_financial_data(CompanyRef(name="Apple", ticker="AAPL", exchange="NASDAQ"))
        finally:
            await provider.aclose()

    profile = asyncio.run(scenario())

    assert profile.current_price == "200.00"
    assert profile.week_change == "+33.33%"
    assert profile.month_change == "+100.00%"


def test_get_financial_data_degrades_on_bad_quote():
    async def scenario():
        provider = _provider()
        try:
            return await provider.get_financial_data(CompanyRef(name="Broken", ticker="BROKEN", exchange="NYSE"))
        finally:
            await provider.aclose()

    profile = asyncio.run(scenario())

    assert profile.ticker == "BROKEN"
    assert profile.current_price == "0.00"
    assert profile.week_change == "0.00%"
    assert profile.month_change == "0.00%"

"""Market data from Tencent's public quote endpoints.

Quote responses look like ``v_usAAPL="200~Apple~AAPL.OQ~189.84~..."``;
K-line rows are ``[date, open, close, high, low, volume]`` ordered oldest
first.
"""

import logging
from typing import Any

import httpx

from stock_agent.schemas.analysis import CompanyProfile, CompanyRef

logger = logging.getLogger(__name__)

SEARCH_PREFIXES = ("us", "sh", "sz", "hk")
NO_MATCH_MARKER = "v_pv_none_match=1"
KLINE_DAYS = 60
MIN_QUOTE_FIELDS = 30

DEFAULT_PRICE = "0.00"
DEFAULT_CHANGE = "0.00%"


def format_ticker_for_tencent(ticker: str, exchange: str) -> str:
    exchange = exchange.upper()
    ticker = ticker.upper()
    if exchange in {"NASDAQ", "NYSE", "AMEX", "US"}:
        return f"us{ticker}"
    if exchange in {"HKEX", "HK"}:
        return f"hk{ticker.zfill(5)}"
    if exchange in {"SSE", "SH"}:
        return f"sh{ticker}"
    if exchange in {"SZSE", "SZ"}:
        return f"sz{ticker}"
    return f"us{ticker}"


def exchange_from_tencent_code(code: str, prefix: str) -> str:
    if prefix == "us":
        suffix = code.rsplit(".", 1)[-1].upper() if "." in code else ""
        return "NYSE" if suffix == "N" else "NASDAQ"
    return {"hk": "HKEX", "sh": "SSE", "sz": "SZSE"}.get(prefix, "UNKNOWN")


def parse_quote(text: str) -> list[str]:
    start = text.find('"')
    end = text.rfind('"')
    if start == -1 or end <= start:
        return []
    return text[start + 1 : end].split("~")


def format_change(change: float) -> str:
    sign = "+" if change > 0 else ""
    return f"{sign}{change:.2f}%"


def rolling_change(daily: list[list[Any]], current_price: float, days_ago: int) -> str:
    target = len(daily) - 1 - days_ago
    if target < 0:
        return DEFAULT_CHANGE
    try:
        past_close = float(daily[target][2])
    except (IndexError, TypeError, ValueError):
        return DEFAULT_CHANGE
    if not past_close:
        return DEFAULT_CHANGE
    return format_change((current_price - past_close) / past_close * 100)


def month_to_date_change(daily: list[list[Any]], current_price: float) -> str:
    """Change against the last close of the previous calendar month."""
    if not daily:
        return DEFAULT_CHANGE
    current_month = str(daily[-1][0]).replace("-", "")[:6]
    for row in reversed(daily):
        if str(row[0]).replace("-", "")[:6] != current_month:
            try:
                previous_close = float(row[2])
            except (IndexError, TypeError, ValueError):
                return DEFAULT_CHANGE
            if not previous_close:
                return DEFAULT_CHANGE
            return format_change((current_price - previous_close) / previous_close * 100)
    return DEFAULT_CHANGE


class TencentMarketData:
    def __init__(
        self,
        quote_url: str = "https://qt.gtimg.cn/q=",
        kline_url: str = "https://web.ifzq.gtimg.cn/appstock/app/fqkline/get",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.quote_url = quote_url
        self.kline_url = kline_url
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _fetch_quote(self, code: str) -> str:
        response = await self.client.get(f"{self.quote_url}{code}")
        response.raise_for_status()
        return response.content.decode("gbk", errors="replace")

    async def search_ticker(self, query: str) -> CompanyRef | None:
        ticker = query.strip().upper()
        if not ticker:
            return None
        for prefix in SEARCH_PREFIXES:
            code = f"{prefix}{ticker}"
            try:
                text = await self._fetch_quote(code)
            except httpx.HTTPError as exc:
                logger.warning("Ticker search failed for %s: %s", code, exc)
                continue
            if "~" not in text or NO_MATCH_MARKER in text:
                continue
            parts = parse_quote(text)
            if len(parts) > 2 and parts[1]:
                exchange = exchange_from_tencent_code(parts[2], prefix)
                if exchange != "UNKNOWN":
                    return CompanyRef(name=parts[1], ticker=ticker, exchange=exchange)
        return None

    async def get_financial_data(self, company: CompanyRef) -> CompanyProfile:
        code = format_ticker_for_tencent(company.ticker, company.exchange)
        try:
            parts = parse_quote(await self._fetch_quote(code))
            if len(parts) < MIN_QUOTE_FIELDS:
                raise ValueError("Invalid data format from Tencent API")
            price_text = parts[3] or DEFAULT_PRICE
            current_price = float(price_text)

            response = await self.client.get(self.kline_url, params={"param": f"{code},day,,,{KLINE_DAYS},qfq"})
            response.raise_for_status()
            node = response.json().get("data", {}).get(code, {})
            daily = node.get("qfqday") or node.get("day") or []

            return CompanyProfile(
                name=company.name,
                ticker=company.ticker,
                exchange=company.exchange,
                current_price=price_text,
                week_change=rolling_change(daily, current_price, 5),
                month_change=month_to_date_change(daily, current_price),
            )
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("Financial data unavailable for %s: %s", company.ticker, exc)
            return CompanyProfile(name=company.name, ticker=company.ticker, exchange=company.exchange)

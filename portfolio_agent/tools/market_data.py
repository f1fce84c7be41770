import httpx
from datetime import datetime

from portfolio_agent.log_config import get_logger

logger = get_logger(__name__)

YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"


async def market_data(symbol: str) -> dict:
    """
    Fetches the current quote for a symbol from Yahoo Finance (free, no API key).
    Uses the Yahoo Finance v8 chart API. Timeout is 8.0s.
    """
    symbol = symbol.upper().strip()
    tool_result_id = f"market_{symbol}_{int(datetime.utcnow().timestamp())}"

    try:
        async with httpx.AsyncClient(timeout=8.0) as client:
            resp = await client.get(
                YAHOO_CHART_URL.format(symbol=symbol),
                params={"interval": "1d", "range": "5d"},
                headers={"User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7)"},
            )
            resp.raise_for_status()
            data = resp.json()

        chart_result = data.get("chart", {}).get("result") or []
        if not chart_result:
            return {
                "tool_name": "market_data",
                "success": False,
                "tool_result_id": tool_result_id,
                "error": "NO_DATA",
                "message": f"No market data found for symbol '{symbol}'.",
            }

        meta = chart_result[0].get("meta", {})
        return {
            "tool_name": "market_data",
            "success": True,
            "tool_result_id": tool_result_id,
            "timestamp": datetime.utcnow().isoformat(),
            "result": {
                "symbol": meta.get("symbol", symbol),
                "name": meta.get("longName") or meta.get("shortName") or symbol,
                "current_price": meta.get("regularMarketPrice"),
                "currency": meta.get("currency"),
                "exchange": meta.get("exchangeName"),
                "instrument_type": meta.get("instrumentType"),
            },
        }

    except httpx.TimeoutException:
        logger.warning("Yahoo Finance timed out for %s", symbol)
        return {
            "tool_name": "market_data",
            "success": False,
            "tool_result_id": tool_result_id,
            "error": "TIMEOUT",
            "message": f"Yahoo Finance timed out fetching {symbol}.",
        }
    except Exception as e:
        logger.warning("Yahoo Finance lookup failed for %s: %s", symbol, e)
        return {
            "tool_name": "market_data",
            "success": False,
            "tool_result_id": tool_result_id,
            "error": "API_ERROR",
            "message": f"Failed to fetch market data for {symbol}: {str(e)}",
        }


async def lookup_symbol(symbol: str) -> dict | None:
    """
    Symbol lookup used by the holding matcher and the price fill-in.
    Returns {symbol, name, price, exchange, currency, confidence} or None;
    a failed lookup never blocks the caller.
    """
    if not symbol or not symbol.strip():
        return None
    result = await market_data(symbol)
    if not result.get("success"):
        return None
    quote = result["result"]
    if quote.get("current_price") is None:
        return None
    return {
        "symbol": quote["symbol"],
        "name": quote["name"],
        "price": quote["current_price"],
        "exchange": quote.get("exchange"),
        "currency": quote.get("currency"),
        "confidence": 0.8,
    }

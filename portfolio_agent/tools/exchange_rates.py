"""
Live SGD/USD/INR rates from exchangerate-api.com.

get_exchange_rates() never raises: any network or payload problem falls
back to currency.DEFAULT_RATES so conversions keep working offline.
"""

import asyncio
import os
from datetime import datetime

import httpx
from pydantic import ValidationError

from portfolio_agent.currency import DEFAULT_RATES
from portfolio_agent.log_config import get_logger
from portfolio_agent.models import ExchangeRates

logger = get_logger(__name__)

DEFAULT_RATE_API_URL = "https://api.exchangerate-api.com/v4/latest"


def _base_url() -> str:
    return os.getenv("EXCHANGE_RATE_API_URL", DEFAULT_RATE_API_URL).rstrip("/")


async def fetch_exchange_rates() -> dict:
    """Fetches the three base tables concurrently and returns the tool envelope."""
    tool_result_id = f"fx_{int(datetime.utcnow().timestamp())}"
    base_url = _base_url()

    async def _fetch(client: httpx.AsyncClient, base: str) -> dict:
        resp = await client.get(f"{base_url}/{base}")
        resp.raise_for_status()
        return resp.json().get("rates", {})

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            sgd, usd, inr = await asyncio.gather(
                _fetch(client, "SGD"), _fetch(client, "USD"), _fetch(client, "INR")
            )
        rates = ExchangeRates(
            SGD_TO_USD=sgd.get("USD"),
            SGD_TO_INR=sgd.get("INR"),
            USD_TO_SGD=usd.get("SGD"),
            USD_TO_INR=usd.get("INR"),
            INR_TO_SGD=inr.get("SGD"),
            INR_TO_USD=inr.get("USD"),
        )
    except httpx.TimeoutException:
        return {
            "tool_name": "exchange_rates",
            "success": False,
            "tool_result_id": tool_result_id,
            "error": "TIMEOUT",
            "message": "Exchange rate provider timed out.",
        }
    except (httpx.HTTPError, ValidationError, ValueError) as e:
        return {
            "tool_name": "exchange_rates",
            "success": False,
            "tool_result_id": tool_result_id,
            "error": "API_ERROR",
            "message": f"Failed to fetch exchange rates: {str(e)}",
        }

    return {
        "tool_name": "exchange_rates",
        "success": True,
        "tool_result_id": tool_result_id,
        "timestamp": datetime.utcnow().isoformat(),
        "result": {"rates": rates.model_dump()},
    }


async def get_exchange_rates() -> ExchangeRates:
    result = await fetch_exchange_rates()
    if result.get("success"):
        return ExchangeRates(**result["result"]["rates"])
    logger.warning("Using default exchange rates: %s", result.get("message"))
    return DEFAULT_RATES

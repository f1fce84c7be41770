"""
pytest conftest for the portfolio agent suite.

1. Points the store at an in-memory SQLite database and wipes it around
   every test.
2. Builds the agent over the fakes in fakes.py, so no test touches the
   network or a real completion service.
3. pytest-asyncio runs in STRICT mode (pyproject.toml); async tests carry
   @pytest.mark.asyncio.
"""

import os

# Use an in-memory SQLite to avoid polluting any real DB
os.environ["PORTFOLIO_DB_PATH"] = ":memory:"

import pytest

from portfolio_agent.agent import PortfolioAgent
from portfolio_agent.evals.fakes import fake_lookup, fixed_rates
from portfolio_agent.store import PortfolioStore, store_clear


@pytest.fixture(autouse=True)
def clear_store():
    """Reset in-memory DB before each test."""
    store_clear()
    yield
    store_clear()


@pytest.fixture(autouse=True)
def no_llm_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)


@pytest.fixture
def store():
    return PortfolioStore()


@pytest.fixture
def agent(store):
    return PortfolioAgent(store=store, lookup=fake_lookup, load_rates=fixed_rates)

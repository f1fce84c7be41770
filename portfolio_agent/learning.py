"""
Learned phrasing patterns and the action history.

Everything here is advisory: a failing write is logged and swallowed so a
mutation that already succeeded is never reported as failed because its
bookkeeping could not be stored.
"""

import re
import sqlite3
from datetime import datetime, timedelta
from typing import Optional

from portfolio_agent.log_config import get_logger
from portfolio_agent.models import ActionRecord, UserPattern
from portfolio_agent.store import PortfolioStore

logger = get_logger(__name__)

MAX_EXAMPLES = 10
MIN_SUCCESS_RATE = 0.7
RECENCY_DAYS = 30
MAX_PATTERNS = 10

_PATTERN_FILLER = {"to", "of", "as", "the", "a", "an", "my"}


def extract_pattern(user_input: str) -> str:
    """Maps an utterance to one of the coarse templates used for learning."""
    lower = user_input.lower()
    if "rename" in lower:
        return "rename {entity} to {new_name}"
    if "delete" in lower or "remove" in lower:
        return "delete {entity}"
    if "sell" in lower or "reduce" in lower:
        return "sell {quantity} of {entity}"
    if "buy" in lower or "add" in lower:
        return "buy {quantity} of {entity}"
    return "unknown_pattern"


def pattern_keywords(pattern: str) -> set[str]:
    text = re.sub(r"\{[^}]*\}", " ", pattern.lower())
    return {w for w in re.findall(r"[a-z_]+", text) if w not in _PATTERN_FILLER}


class LearningService:
    def __init__(self, store: PortfolioStore):
        self.store = store

    async def store_pattern(self, pattern: str, example: str, success: bool) -> None:
        """Incremental success-rate mean; examples keep the 10 most recent."""
        outcome = 1.0 if success else 0.0
        try:
            existing = await self.store.get_pattern(pattern)
            if existing:
                count = existing.usage_count + 1
                updated = existing.model_copy(update={
                    "success_rate": (existing.success_rate * existing.usage_count + outcome) / count,
                    "usage_count": count,
                    "last_used": datetime.utcnow(),
                    "examples": (existing.examples + [example])[-MAX_EXAMPLES:],
                })
            else:
                updated = UserPattern(
                    pattern=pattern,
                    success_rate=outcome,
                    usage_count=1,
                    last_used=datetime.utcnow(),
                    examples=[example],
                )
            await self.store.save_pattern(updated)
        except sqlite3.Error as e:
            logger.warning("Could not store pattern %r: %s", pattern, e)

    async def get_relevant_patterns(self, user_input: str) -> list[UserPattern]:
        since = datetime.utcnow() - timedelta(days=RECENCY_DAYS)
        try:
            patterns = await self.store.list_patterns(MIN_SUCCESS_RATE, since, MAX_PATTERNS)
        except sqlite3.Error as e:
            logger.warning("Could not load patterns: %s", e)
            return []
        words = set(re.findall(r"[a-z_]+", user_input.lower()))
        return [p for p in patterns if pattern_keywords(p.pattern) & words]

    async def store_action_history(
        self,
        user_input: str,
        action_taken: str,
        success: bool,
        pattern_used: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[int]:
        try:
            return await self.store.add_action(user_input, action_taken, success, pattern_used, metadata)
        except sqlite3.Error as e:
            logger.warning("Could not record action %s: %s", action_taken, e)
            return None

    async def get_recent_actions(self, limit: int = 10) -> list[ActionRecord]:
        try:
            return await self.store.recent_actions(limit)
        except sqlite3.Error as e:
            logger.warning("Could not load action history: %s", e)
            return []

    async def record(self, user_input: str, action_taken: str, success: bool, metadata: dict) -> Optional[int]:
        """Stores the history record and updates the pattern for user_input."""
        pattern = extract_pattern(user_input)
        history_id = await self.store_action_history(user_input, action_taken, success, pattern, metadata)
        await self.store_pattern(pattern, user_input, success)
        return history_id

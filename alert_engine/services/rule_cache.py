"""
Rule Cache - workspace-scoped, read-mostly cache of parsed routing rules

Entries expire after a TTL and are dropped explicitly whenever a rule in the
workspace is created, updated or deleted. A rule edit becomes visible to the
next evaluation after invalidation or expiry; in-flight evaluations keep the
snapshot they already loaded.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from alert_engine.metrics import RULE_CACHE_EVENTS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedRule:
    """An immutable, validated snapshot of a RoutingRule row."""
    id: object
    workspace_id: str
    name: str
    priority: int
    created_at: object
    conditions: object  # ConditionGroup
    actions: object  # RuleActions
    enabled: bool = True


class RuleCache:
    def __init__(self, ttl_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def get(self, workspace_id: str) -> Optional[List[CachedRule]]:
        entry = self._entries.get(workspace_id)
        if entry is None:
            RULE_CACHE_EVENTS.labels(event="miss").inc()
            return None
        loaded_at, rules = entry
        if self._clock() - loaded_at > self.ttl_seconds:
            RULE_CACHE_EVENTS.labels(event="miss").inc()
            return None
        RULE_CACHE_EVENTS.labels(event="hit").inc()
        return rules

    def put(self, workspace_id: str, rules: List[CachedRule]) -> None:
        with self._lock:
            self._entries[workspace_id] = (self._clock(), list(rules))

    def get_or_load(self, workspace_id: str, loader: Callable[[str], List[CachedRule]]) -> List[CachedRule]:
        rules = self.get(workspace_id)
        if rules is None:
            rules = loader(workspace_id)
            self.put(workspace_id, rules)
        return rules

    def invalidate(self, workspace_id: str) -> None:
        with self._lock:
            self._entries.pop(workspace_id, None)
        RULE_CACHE_EVENTS.labels(event="invalidate").inc()
        logger.debug(f"Rule cache invalidated for workspace {workspace_id}")

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Rule cache cleared")


_rule_cache: Optional[RuleCache] = None


def get_rule_cache() -> RuleCache:
    """Get the process-wide rule cache instance."""
    global _rule_cache
    if _rule_cache is None:
        from alert_engine.config import get_settings
        _rule_cache = RuleCache(ttl_seconds=get_settings().rule_cache_ttl_seconds)
    return _rule_cache

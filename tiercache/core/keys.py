"""Cache key conventions shared by every tier."""

import json
import time
from typing import Any, Mapping


def serialize_params(params: Any) -> str:
    """Canonical JSON for key building: sorted keys, no whitespace."""
    return json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)


def filter_key(namespace: str, filters: Mapping[str, Any]) -> str:
    """Key for a filtered read, e.g. ``properties:{"bedrooms":2}``."""
    return f"{namespace}:{serialize_params(dict(filters))}"


class CacheKeyGenerators:
    """Deterministic key builders for common access patterns."""

    @staticmethod
    def property(property_id: str, *params: Any) -> str:
        return f"property:{property_id}:{serialize_params(list(params))}"

    @staticmethod
    def community(community_id: str, *params: Any) -> str:
        return f"community:{community_id}:{serialize_params(list(params))}"

    @staticmethod
    def search(search_type: str, query: str, filters: Any) -> str:
        return f"search:{search_type}:{query}:{serialize_params(filters)}"

    @staticmethod
    def user(user_id: str, data_type: str, *params: Any) -> str:
        return f"user:{user_id}:{data_type}:{serialize_params(list(params))}"

    @staticmethod
    def paginated(kind: str, page: int, limit: int, *params: Any) -> str:
        return f"paginated:{kind}:{page}:{limit}:{serialize_params(list(params))}"

    @staticmethod
    def timestamped(key: str, interval_minutes: float, now: float = None) -> str:
        """Suffix ``key`` with the current time bucket so it rolls over every interval."""
        now = time.time() if now is None else now
        bucket = int(now // (interval_minutes * 60))
        return f"{key}:{bucket}"


class CacheTags:
    """Tags used for grouped invalidation."""
    PROPERTIES = "properties"
    COMMUNITIES = "communities"
    AGENTS = "agents"
    INSIGHTS = "insights"
    SEARCH = "search"
    USER_DATA = "user-data"
    METADATA = "metadata"
    IMAGES = "images"
    ANALYTICS = "analytics"

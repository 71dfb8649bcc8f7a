"""
Redis-backed idempotency keys for mutating API calls
"""
import json
import redis
from typing import Optional, Dict, Any
from .settings import settings
from .error_handling import StateConflictError

PENDING = "__pending__"

class IdempotencyCache:
    """Remembers the response of a request keyed by (user, operation, Idempotency-Key)"""

    def __init__(self, client=None, ttl_seconds: int = None):
        self.client = client if client is not None else redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.ttl_seconds = ttl_seconds or settings.idempotency_ttl_seconds

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    @staticmethod
    def _key(user_id: str, operation: str, idempotency_key: str) -> str:
        return f"idempotency:{operation}:{user_id}:{idempotency_key}"

    def claim(self, user_id: str, operation: str, idempotency_key: str) -> Optional[Dict[str, Any]]:
        """Claim a key for a new request.

        Returns None when the caller owns the key and should proceed, or the
        stored response body when the request was already completed.
        """
        key = self._key(user_id, operation, idempotency_key)
        if self.client.set(key, PENDING, nx=True, ex=self.ttl_seconds):
            return None
        value = self.client.get(key)
        if value is None or value == PENDING:
            raise StateConflictError(
                "A request with this Idempotency-Key is still in progress",
                field="Idempotency-Key",
            )
        return json.loads(value)

    def complete(self, user_id: str, operation: str, idempotency_key: str, response: Dict[str, Any]) -> None:
        key = self._key(user_id, operation, idempotency_key)
        self.client.set(key, json.dumps(response), ex=self.ttl_seconds)

    def release(self, user_id: str, operation: str, idempotency_key: str) -> None:
        """Drop a claim whose request failed so the caller may retry"""
        self.client.delete(self._key(user_id, operation, idempotency_key))

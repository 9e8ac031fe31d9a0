"""
Short-lived key-value storage for one-time login codes.

Two interchangeable backends: an in-process TTL map for single-instance
deployments and Redis for anything horizontally scaled. Codes are single use:
`consume` deletes a code only when it matches, so a mistyped attempt leaves
the valid code in place until it expires.
"""
import logging
import secrets
import threading
from abc import ABC, abstractmethod
from typing import Optional

import redis
from cachetools import TTLCache

from marisa.core.config import settings

logger = logging.getLogger(__name__)


class OTPStore(ABC):
    @abstractmethod
    def put(self, email: str, code: str) -> None:
        ...

    @abstractmethod
    def get(self, email: str) -> Optional[str]:
        ...

    @abstractmethod
    def delete(self, email: str) -> bool:
        """Remove the code; True only for the caller that actually removed it."""

    def consume(self, email: str, code: str) -> bool:
        stored = self.get(email)
        if stored is None or not secrets.compare_digest(stored, code):
            return False
        return self.delete(email)


class MemoryOTPStore(OTPStore):
    """Process-local; restarting the service invalidates every pending code."""

    def __init__(self, ttl_seconds: int, maxsize: int = 10000):
        self._codes: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds)
        self._lock = threading.Lock()

    def put(self, email: str, code: str) -> None:
        with self._lock:
            self._codes[email] = code

    def get(self, email: str) -> Optional[str]:
        with self._lock:
            return self._codes.get(email)

    def delete(self, email: str) -> bool:
        with self._lock:
            return self._codes.pop(email, None) is not None


class RedisOTPStore(OTPStore):
    def __init__(self, client: redis.Redis, ttl_seconds: int):
        self.redis = client
        self.ttl_seconds = ttl_seconds

    def _key(self, email: str) -> str:
        return f"otp:{email}"

    def put(self, email: str, code: str) -> None:
        self.redis.set(self._key(email), code, ex=self.ttl_seconds)

    def get(self, email: str) -> Optional[str]:
        return self.redis.get(self._key(email))

    def delete(self, email: str) -> bool:
        return self.redis.delete(self._key(email)) == 1


def build_otp_store() -> OTPStore:
    if settings.OTP_BACKEND == "redis":
        logger.info("Using redis OTP store")
        client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        return RedisOTPStore(client, settings.OTP_TTL_SECONDS)
    return MemoryOTPStore(settings.OTP_TTL_SECONDS, settings.OTP_MAX_ENTRIES)


otp_store = build_otp_store()

def get_otp_store() -> OTPStore:
    return otp_store

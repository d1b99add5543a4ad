"""
Circuit breaker implementation using pybreaker library.
State lives in Redis when REDIS_URL is configured (shared across API workers),
otherwise in process memory.
"""
import logging

import pybreaker
import redis

from stkpay.core.config import Settings
from stkpay.utils.metrics import circuit_breaker_state


logger = logging.getLogger("circuit_breaker")


def _state_name(state) -> str:
    return getattr(state, "name", None) or str(state)


class CircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """Listener for circuit breaker events (logging/metrics)."""

    def __init__(self, name: str) -> None:
        self.name = name

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        new_name = _state_name(new_state)
        circuit_breaker_state.labels(name=self.name).set(
            1 if new_name == pybreaker.STATE_OPEN else 0
        )
        logger.warning(
            "circuit_breaker_state_change",
            extra={
                "breaker_name": self.name,
                "old_state": _state_name(old_state),
                "new_state": new_name,
            },
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        logger.warning(
            "circuit_breaker_failure",
            extra={
                "breaker_name": self.name,
                "error": type(exc).__name__,
            },
        )


def _build_storage(name: str, settings: Settings) -> pybreaker.CircuitBreakerStorage:
    if settings.redis_url:
        # pybreaker needs raw bytes responses from redis-py
        client = redis.Redis.from_url(settings.redis_url)
        return pybreaker.CircuitRedisStorage(
            pybreaker.STATE_CLOSED, client, namespace=f"cb:{name}"
        )
    return pybreaker.CircuitMemoryStorage(pybreaker.STATE_CLOSED)


_breakers: dict[str, pybreaker.CircuitBreaker] = {}


def get_circuit_breaker(name: str, settings: Settings) -> pybreaker.CircuitBreaker:
    """Get or create a circuit breaker by name."""
    if name not in _breakers:
        _breakers[name] = pybreaker.CircuitBreaker(
            fail_max=settings.cb_failure_threshold,
            reset_timeout=settings.cb_open_seconds,
            state_storage=_build_storage(name, settings),
            listeners=[CircuitBreakerListener(name)],
            name=name,
        )
    return _breakers[name]

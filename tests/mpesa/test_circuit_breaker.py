"""Tests for the gateway circuit breaker factory."""
import pybreaker
import pytest
from prometheus_client import REGISTRY

from stkpay.services.circuit_breaker import get_circuit_breaker


def _boom():
    raise ValueError("gateway down")


def test_breaker_opens_after_threshold(settings_factory):
    breaker = get_circuit_breaker("test-open", settings_factory(cb_failure_threshold=2, cb_open_seconds=60))
    for _ in range(2):
        with pytest.raises((ValueError, pybreaker.CircuitBreakerError)):
            breaker.call(_boom)

    assert breaker.current_state == pybreaker.STATE_OPEN
    assert REGISTRY.get_sample_value("circuit_breaker_state", {"name": "test-open"}) == 1
    with pytest.raises(pybreaker.CircuitBreakerError):
        breaker.call(lambda: "ok")


def test_breakers_are_shared_by_name(settings):
    assert get_circuit_breaker("test-shared", settings) is get_circuit_breaker("test-shared", settings)

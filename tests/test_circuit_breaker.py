"""Tests for per-model circuit breakers and the outage registry."""

from llm_gateway.gateway.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from llm_gateway.gateway.circuit_breaker_registry import (
    clear_outage,
    configure_circuit_breakers,
    get_all_breakers,
    get_circuit_breaker,
    is_model_in_outage,
    record_model_result,
    report_outage,
)
from llm_gateway.observability import GatewayEventType, get_gateway_events


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def breaker(clock, **overrides):
    config = CircuitBreakerConfig(**{"min_requests": 4, "cooldown_seconds": 60, **overrides})
    return CircuitBreaker(config, model_id="acme/model", clock=clock)


class TestCircuitBreaker:
    """CLOSED -> OPEN -> HALF_OPEN -> CLOSED transitions."""

    def test_stays_closed_below_min_requests(self):
        cb = breaker(ManualClock())
        for _ in range(3):
            cb.record_failure()
        assert cb.state == CircuitState.CLOSED

    def test_opens_above_threshold(self):
        cb = breaker(ManualClock())
        cb.record_success()
        cb.record_success()
        cb.record_failure()
        cb.record_failure()
        assert cb.state == CircuitState.OPEN
        assert cb.is_open

    def test_half_open_after_cooldown_then_closes(self):
        clock = ManualClock()
        cb = breaker(clock, half_open_max_requests=2)
        cb.force_open()
        clock.now += 61
        assert cb.state == CircuitState.HALF_OPEN
        cb.record_success()
        cb.record_success()
        assert cb.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        clock = ManualClock()
        cb = breaker(clock)
        cb.force_open()
        clock.now += 61
        cb.record_failure()
        assert cb.state == CircuitState.OPEN

    def test_window_prunes_old_results(self):
        clock = ManualClock()
        cb = breaker(clock, window_seconds=10)
        cb.record_failure()
        clock.now += 20
        assert cb.request_count_in_window() == 0
        assert cb.failure_rate() == 0.0


class TestRegistry:
    def test_unknown_model_not_in_outage(self):
        assert not is_model_in_outage("acme/never-called")

    def test_failures_open_and_emit_event(self):
        configure_circuit_breakers(CircuitBreakerConfig(min_requests=2, failure_threshold=0.5))
        record_model_result("acme/model", success=False)
        record_model_result("acme/model", success=False)
        assert is_model_in_outage("acme/model")
        events = get_gateway_events(GatewayEventType.CIRCUIT_BREAKER_OPEN)
        assert events[0].data["model_id"] == "acme/model"

    def test_report_and_clear_outage(self):
        report_outage("acme/model")
        assert is_model_in_outage("acme/model")
        clear_outage("acme/model")
        assert not is_model_in_outage("acme/model")
        assert get_gateway_events(GatewayEventType.CIRCUIT_BREAKER_CLOSE)

    def test_breakers_are_shared_per_model(self):
        assert get_circuit_breaker("a") is get_circuit_breaker("a")
        assert set(get_all_breakers()) == {"a"}

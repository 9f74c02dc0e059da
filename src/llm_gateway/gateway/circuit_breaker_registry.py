"""Per-model circuit breaker registry.

Thread-safe registry of per-model breakers with event emission on state
transitions. The selection service asks ``is_model_in_outage`` before
honouring a sticky entry.

Usage:
    >>> record_model_result("openai/gpt-4o", success=False)
    >>> is_model_in_outage("openai/gpt-4o")
    False
"""

import logging
import threading
from typing import Dict, Optional

from ..observability import GatewayEventType, emit_gateway_event
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState

logger = logging.getLogger(__name__)

_circuit_breakers: Dict[str, CircuitBreaker] = {}
_default_config: Optional[CircuitBreakerConfig] = None
_registry_lock = threading.Lock()


def configure_circuit_breakers(config: Optional[CircuitBreakerConfig]) -> None:
    """Set the config used for breakers created from now on."""
    global _default_config
    with _registry_lock:
        _default_config = config


def get_circuit_breaker(model_id: str) -> CircuitBreaker:
    """Get or create the breaker for a model."""
    with _registry_lock:
        breaker = _circuit_breakers.get(model_id)
        if breaker is None:
            breaker = CircuitBreaker(config=_default_config, model_id=model_id)
            _circuit_breakers[model_id] = breaker
        return breaker


def is_model_in_outage(model_id: str) -> bool:
    """Outage signal for selection: True while the model's breaker is OPEN."""
    with _registry_lock:
        breaker = _circuit_breakers.get(model_id)
    return breaker is not None and breaker.is_open


def record_model_result(model_id: str, success: bool) -> None:
    """Record a call result, emitting events on state transitions."""
    breaker = get_circuit_breaker(model_id)
    old_state = breaker.state
    if success:
        breaker.record_success()
    else:
        breaker.record_failure()
    new_state = breaker.state
    if old_state != new_state:
        _emit_state_change(breaker, old_state, new_state)


def report_outage(model_id: str) -> None:
    """Mark a model as down until its cooldown passes."""
    breaker = get_circuit_breaker(model_id)
    old_state = breaker.state
    breaker.force_open()
    if old_state != CircuitState.OPEN:
        _emit_state_change(breaker, old_state, CircuitState.OPEN)


def clear_outage(model_id: str) -> None:
    breaker = get_circuit_breaker(model_id)
    old_state = breaker.state
    breaker.reset()
    if old_state != CircuitState.CLOSED:
        _emit_state_change(breaker, old_state, CircuitState.CLOSED)


def _emit_state_change(
    breaker: CircuitBreaker,
    old_state: CircuitState,
    new_state: CircuitState,
) -> None:
    if new_state == CircuitState.OPEN:
        emit_gateway_event(
            GatewayEventType.CIRCUIT_BREAKER_OPEN,
            {
                "model_id": breaker.model_id,
                "failure_rate": breaker.failure_rate(),
                "request_count": breaker.request_count_in_window(),
                "from_state": old_state.value,
            },
        )
        logger.warning(
            "Circuit breaker OPEN for %s (failure_rate=%.2f%%)",
            breaker.model_id,
            breaker.failure_rate() * 100,
        )
    elif new_state == CircuitState.CLOSED:
        emit_gateway_event(
            GatewayEventType.CIRCUIT_BREAKER_CLOSE,
            {"model_id": breaker.model_id, "from_state": old_state.value},
        )
        logger.info("Circuit breaker CLOSED for %s", breaker.model_id)


def get_all_breakers() -> Dict[str, CircuitBreaker]:
    with _registry_lock:
        return dict(_circuit_breakers)


def _reset_registry() -> None:
    """Reset the registry (for testing only)."""
    global _circuit_breakers, _default_config
    with _registry_lock:
        _circuit_breakers = {}
        _default_config = None

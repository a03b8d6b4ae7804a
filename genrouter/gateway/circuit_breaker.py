"""Circuit Breaker per provider.

Implements the circuit breaker pattern per provider:
  - CLOSED: normal operation, attempts pass through
  - OPEN: too many consecutive transient failures, the provider is skipped
  - HALF_OPEN: recovery timeout elapsed, a single trial attempt is allowed

The dispatcher treats an open circuit like a transient failure and moves on
to the next candidate, so a dead backend stops costing a full attempt timeout
on every request.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting attempts
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class _CircuitStats:
    """Failure tracking for a single provider's circuit."""

    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    last_failure_time: float = 0.0
    state: CircuitState = CircuitState.CLOSED
    opened_at: float = 0.0
    trial_in_flight: bool = False


# Thresholds for opening the circuit
FAILURE_THRESHOLD = 5  # Consecutive failures to open circuit
RECOVERY_TIMEOUT = 60.0  # Seconds before trying half-open


class CircuitBreaker:
    """Per-provider circuit breaker.

    Usage:
        cb = CircuitBreaker()

        if not cb.allow_request("openai"):
            ...  # skip candidate

        cb.record_success("openai")
        cb.record_failure("openai")
    """

    def __init__(
        self,
        failure_threshold: int = FAILURE_THRESHOLD,
        recovery_timeout: float = RECOVERY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._circuits: dict[str, _CircuitStats] = {}

    def _get_circuit(self, provider_id: str) -> _CircuitStats:
        if provider_id not in self._circuits:
            self._circuits[provider_id] = _CircuitStats()
        return self._circuits[provider_id]

    def allow_request(self, provider_id: str) -> bool:
        """Check if an attempt against the provider is allowed."""
        circuit = self._get_circuit(provider_id)
        now = self._clock()

        if circuit.state == CircuitState.CLOSED:
            return True

        if circuit.state == CircuitState.OPEN:
            if now - circuit.opened_at >= self.recovery_timeout:
                circuit.state = CircuitState.HALF_OPEN
                circuit.trial_in_flight = True
                logger.info("Circuit for %s transitioning to HALF_OPEN", provider_id)
                return True
            return False

        # HALF_OPEN: one trial at a time
        if circuit.trial_in_flight:
            return False
        circuit.trial_in_flight = True
        return True

    def record_success(self, provider_id: str) -> None:
        """Record a successful attempt — resets failure counter, closes circuit."""
        circuit = self._get_circuit(provider_id)
        circuit.consecutive_failures = 0
        circuit.total_successes += 1
        circuit.trial_in_flight = False

        if circuit.state != CircuitState.CLOSED:
            logger.info("Circuit for %s CLOSED (recovered)", provider_id)
            circuit.state = CircuitState.CLOSED

    def record_failure(self, provider_id: str) -> None:
        """Record a transient failure; opens the circuit past the threshold."""
        circuit = self._get_circuit(provider_id)
        circuit.consecutive_failures += 1
        circuit.total_failures += 1
        circuit.last_failure_time = self._clock()
        circuit.trial_in_flight = False

        if circuit.state == CircuitState.HALF_OPEN or circuit.consecutive_failures >= self.failure_threshold:
            if circuit.state != CircuitState.OPEN:
                circuit.state = CircuitState.OPEN
                circuit.opened_at = self._clock()
                logger.warning(
                    "Circuit for %s OPENED after %d consecutive failures",
                    provider_id,
                    circuit.consecutive_failures,
                )

    def release_trial(self, provider_id: str) -> None:
        """Free a half-open trial slot without judging the provider (e.g. fatal request error)."""
        self._get_circuit(provider_id).trial_in_flight = False

    def is_open(self, provider_id: str) -> bool:
        return self._get_circuit(provider_id).state == CircuitState.OPEN

    def get_circuit_state(self, provider_id: str) -> dict:
        """Get the current state of a provider's circuit."""
        circuit = self._get_circuit(provider_id)
        return {
            "provider_id": provider_id,
            "state": circuit.state.value,
            "consecutive_failures": circuit.consecutive_failures,
            "total_failures": circuit.total_failures,
            "total_successes": circuit.total_successes,
        }

    def get_all_states(self) -> list[dict]:
        """Get circuit states for all providers seen so far."""
        return [self.get_circuit_state(p) for p in self._circuits]

    def reset(self, provider_id: str) -> None:
        """Manually reset a provider's circuit to CLOSED."""
        circuit = self._get_circuit(provider_id)
        circuit.state = CircuitState.CLOSED
        circuit.consecutive_failures = 0
        circuit.trial_in_flight = False
        logger.info("Circuit for %s manually RESET", provider_id)

"""Retry/backoff policy and per-source circuit breaker.

Backoff is exponential with upward-only jitter::

    delay(n) = min(initial * multiplier**(n-1) * (1 + u * jitter), max)     u ∈ [0, 1)

With ``jitter <= multiplier - 1`` successive delays never shrink, so a
source that keeps failing backs off monotonically up to the ceiling.

Circuit state machine (one per source)::

    CLOSED --N consecutive transient failures--> OPEN
    OPEN   --cooldown elapsed, next allow()-->   HALF_OPEN (one trial)
    HALF_OPEN --success--> CLOSED
    HALF_OPEN --failure--> OPEN (cooldown doubled, capped)

``AuthError`` parks the source in OPEN for good.  ``ParseError`` and
normaliser errors are recorded but never move the state machine.
"""

from __future__ import annotations

import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .common_types import AdapterRunState, CircuitState
from .errors import AuthError, NewsstackError, RateLimitedError

logger = logging.getLogger(__name__)

TransitionListener = Callable[[str, CircuitState], None]


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with upward-only jitter."""

    initial_s: float = 1.0
    multiplier: float = 2.0
    max_s: float = 60.0
    jitter: float = 0.10

    def delay(self, attempt: int, u: float = 0.0) -> float:
        """Delay before retry number *attempt* (1-based); *u* is a uniform draw in [0, 1)."""
        if attempt <= 0:
            return 0.0
        # Cap the exponent so multiplier**n cannot overflow for long outages.
        exp = min(attempt - 1, 64)
        raw = self.initial_s * (self.multiplier ** exp) * (1.0 + u * self.jitter)
        return min(raw, self.max_s)


class RetryController:
    """Owns the per-source ``AdapterRunState`` map and its transitions.

    Not thread-safe; every call happens on the event loop thread.
    """

    def __init__(
        self,
        policy: Optional[BackoffPolicy] = None,
        *,
        failure_threshold: int = 3,
        cooldown_initial_s: float = 30.0,
        cooldown_max_s: float = 900.0,
        rate_limit_default_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        on_transition: Optional[TransitionListener] = None,
    ) -> None:
        self.policy = policy or BackoffPolicy()
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_initial_s = cooldown_initial_s
        self.cooldown_max_s = cooldown_max_s
        self.rate_limit_default_s = rate_limit_default_s
        self._clock = clock
        self._rng = rng or random.Random()
        self._on_transition = on_transition
        self._states: Dict[str, AdapterRunState] = {}

    # ── State map ───────────────────────────────────────────────

    def register(self, source_id: str) -> AdapterRunState:
        if source_id in self._states:
            raise ValueError(f"source {source_id!r} already registered")
        state = AdapterRunState(source_id=source_id)
        self._states[source_id] = state
        return state

    def state(self, source_id: str) -> AdapterRunState:
        return self._states[source_id]

    def states(self) -> Dict[str, AdapterRunState]:
        return dict(self._states)

    def _set_circuit(self, st: AdapterRunState, new: CircuitState) -> None:
        if st.circuit is new:
            return
        old = st.circuit
        st.circuit = new
        if new is CircuitState.OPEN:
            logger.warning(
                "%s: circuit %s -> open after %d failure(s); cooldown %.1fs",
                st.source_id, old.value, st.consecutive_failures, st.cooldown_s,
            )
        else:
            logger.info("%s: circuit %s -> %s", st.source_id, old.value, new.value)
        if self._on_transition is not None:
            self._on_transition(st.source_id, new)

    def cooldown(self, open_count: int) -> float:
        """Cooldown for the *open_count*-th consecutive opening."""
        if open_count <= 0:
            return 0.0
        exp = min(open_count - 1, 64)
        raw = self.cooldown_initial_s * (2.0 ** exp) * (1.0 + self._rng.random() * self.policy.jitter)
        return min(raw, self.cooldown_max_s)

    # ── Gate ────────────────────────────────────────────────────

    def allow(self, source_id: str) -> bool:
        """May *source_id* attempt an operation now?

        An OPEN circuit whose cooldown has elapsed moves to HALF_OPEN and
        admits exactly one trial; further calls are refused until that
        trial is recorded.
        """
        st = self._states[source_id]
        if st.auth_failed:
            logger.debug("%s: skipped (credentials rejected)", source_id)
            return False
        if st.circuit is CircuitState.CLOSED:
            return True
        if st.circuit is CircuitState.OPEN:
            opened_at = st.opened_at if st.opened_at is not None else self._clock()
            if self._clock() < opened_at + st.cooldown_s:
                return False
            self._set_circuit(st, CircuitState.HALF_OPEN)
        if st.trial_in_flight:
            return False
        st.trial_in_flight = True
        return True

    def retry_at(self, source_id: str) -> Optional[float]:
        """Earliest clock time at which the source should be re-attempted, if any."""
        st = self._states[source_id]
        if st.auth_failed:
            return None
        return st.retry_at

    def delay(self, source_id: str) -> float:
        return self._states[source_id].current_delay_s

    # ── Outcomes ────────────────────────────────────────────────

    def record_success(self, source_id: str) -> None:
        st = self._states[source_id]
        st.consecutive_failures = 0
        st.current_delay_s = 0.0
        st.retry_at = None
        st.trial_in_flight = False
        st.last_success_at = self._clock()
        st.last_error = ""
        if st.circuit is not CircuitState.CLOSED:
            st.open_count = 0
            st.cooldown_s = 0.0
            st.opened_at = None
            self._set_circuit(st, CircuitState.CLOSED)

    def record_failure(self, source_id: str, exc: BaseException) -> Optional[float]:
        """Classify *exc* and update the source's state.

        Returns the delay (seconds) before the next attempt for retryable
        failures, ``math.inf`` for auth failures, and ``None`` for
        failures that do not affect scheduling (parse / normalise).
        """
        st = self._states[source_id]
        now = self._clock()
        st.last_error = f"{type(exc).__name__}: {exc}"[:300]

        if isinstance(exc, AuthError):
            st.trial_in_flight = False
            st.retry_at = None
            if not st.auth_failed:
                st.auth_failed = True
                logger.error(
                    "%s: credentials rejected (%s); source disabled until reconfigured",
                    source_id, exc,
                )
            st.opened_at = now
            self._set_circuit(st, CircuitState.OPEN)
            return math.inf

        retryable = getattr(exc, "retryable", None)
        if isinstance(exc, NewsstackError) and not retryable:
            # Parse / normalise: a completed no-op.  A half-open trial
            # that ends this way stays half-open until the next due run.
            st.trial_in_flight = False
            st.retry_at = None
            return None

        st.consecutive_failures += 1
        delay = self.policy.delay(st.consecutive_failures, self._rng.random())
        if isinstance(exc, RateLimitedError):
            wait = exc.retry_after_s if exc.retry_after_s is not None else self.rate_limit_default_s
            delay = max(delay, wait)
        st.current_delay_s = delay

        reopen = st.circuit is not CircuitState.CLOSED
        if reopen or st.consecutive_failures >= self.failure_threshold:
            st.trial_in_flight = False
            st.open_count += 1
            st.cooldown_s = max(self.cooldown(st.open_count), delay)
            st.opened_at = now
            st.retry_at = now + st.cooldown_s
            if st.circuit is CircuitState.OPEN:
                logger.warning("%s: circuit re-armed; cooldown %.1fs", source_id, st.cooldown_s)
            self._set_circuit(st, CircuitState.OPEN)
        else:
            st.retry_at = now + delay
        return st.retry_at - now

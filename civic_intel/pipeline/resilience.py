from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Protocol

from civic_intel.config import Settings
from civic_intel.domain.errors import (
    CircuitOpen,
    CollaboratorTimeout,
    CollaboratorUnavailable,
    PipelineCancelled,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half-open"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 2.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)."""
        return min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = Lock()
        self._state = STATE_CLOSED
        self._failures = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> str:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> str:
        if (
            self._state == STATE_OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.cooldown_seconds
        ):
            self._state = STATE_HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        with self._lock:
            return self._current_state() != STATE_OPEN

    def record_success(self) -> None:
        with self._lock:
            if self._state != STATE_CLOSED:
                logger.info("Circuit %s closed", self.name)
            self._failures = 0
            self._state = STATE_CLOSED
            self._opened_at = None

    def record_failure(self) -> None:
        with self._lock:
            state = self._current_state()
            self._failures += 1
            if state == STATE_HALF_OPEN or self._failures >= self.failure_threshold:
                if state != STATE_OPEN:
                    logger.warning("Circuit %s opened after %s failures", self.name, self._failures)
                self._state = STATE_OPEN
                self._opened_at = self._clock()


class DeadLetterSink(Protocol):
    def dead_letter(
        self,
        *,
        operation: str,
        error: str,
        attempts: int,
        complaint_id: str | None,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        ...


class ResilientCaller:
    """Retry with exponential backoff, per-collaborator circuit breaking and call timeouts.

    Exhausted calls are handed to the dead-letter sink before the failure is raised.
    """

    def __init__(
        self,
        *,
        retry: RetryPolicy | None = None,
        timeout_seconds: float = 8.0,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        dead_letters: DeadLetterSink | None = None,
    ) -> None:
        self.retry = retry or RetryPolicy()
        self.timeout_seconds = timeout_seconds
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._sleep = sleep
        self._clock = clock
        self.dead_letters = dead_letters
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="collaborator")
        self._breakers: dict[str, CircuitBreaker] = {}
        self._breakers_lock = Lock()

    @classmethod
    def from_settings(cls, cfg: Settings, **kwargs: Any) -> "ResilientCaller":
        return cls(
            retry=RetryPolicy(
                max_attempts=cfg.retry_max_attempts,
                base_delay=cfg.retry_base_delay_seconds,
                max_delay=cfg.retry_max_delay_seconds,
            ),
            timeout_seconds=cfg.collaborator_timeout_seconds,
            failure_threshold=cfg.breaker_failure_threshold,
            cooldown_seconds=cfg.breaker_cooldown_seconds,
            max_workers=cfg.collaborator_workers,
            **kwargs,
        )

    def breaker(self, name: str) -> CircuitBreaker:
        with self._breakers_lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(
                    name,
                    failure_threshold=self.failure_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self._clock,
                )
            return self._breakers[name]

    def deadline_in(self, seconds: float) -> float:
        return self._clock() + seconds

    def check_deadline(self, deadline: float | None, stage: str) -> None:
        if deadline is not None and self._clock() >= deadline:
            raise PipelineCancelled(f"Pipeline deadline reached before {stage}")

    def breaker_states(self) -> dict[str, str]:
        with self._breakers_lock:
            names = list(self._breakers)
        return {name: self.breaker(name).state for name in names}

    def call(
        self,
        name: str,
        fn: Callable[..., Any],
        *args: Any,
        complaint_id: str | None = None,
        deadline: float | None = None,
        **kwargs: Any,
    ) -> Any:
        breaker = self.breaker(name)
        last_error: Exception | None = None
        attempts = 0

        for attempt in range(1, self.retry.max_attempts + 1):
            if not breaker.allow_request():
                raise CircuitOpen(name, "circuit open; call short-circuited")

            timeout = self.timeout_seconds
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise PipelineCancelled(f"Pipeline deadline reached before {name} call")
                timeout = min(timeout, remaining)

            attempts = attempt
            try:
                result = self._run_with_timeout(name, fn, timeout, *args, **kwargs)
            except ValidationError:
                raise
            except CollaboratorUnavailable as exc:
                last_error = exc
            except Exception as exc:
                last_error = CollaboratorUnavailable(name, str(exc))
            else:
                breaker.record_success()
                return result

            breaker.record_failure()
            logger.warning("Collaborator %s failed (attempt %s/%s): %s", name, attempt, self.retry.max_attempts, last_error)
            if attempt < self.retry.max_attempts:
                delay = self.retry.delay_for(attempt)
                if deadline is not None and self._clock() + delay >= deadline:
                    raise PipelineCancelled(f"Pipeline deadline reached while retrying {name}")
                self._sleep(delay)

        if deadline is not None and self._clock() >= deadline:
            raise PipelineCancelled(f"Pipeline deadline reached during {name} call")

        error_text = str(last_error) if last_error else f"{name} failed"
        if self.dead_letters is not None:
            row = self.dead_letters.dead_letter(
                operation=name,
                error=error_text,
                attempts=attempts,
                complaint_id=complaint_id,
                payload={"args": [str(a) for a in args]},
            )
            logger.error("Collaborator %s exhausted retries; dead-lettered as %s", name, row.get("id"))
        raise CollaboratorUnavailable(name, error_text)

    def _run_with_timeout(self, name: str, fn: Callable[..., Any], timeout: float, *args: Any, **kwargs: Any) -> Any:
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise CollaboratorTimeout(name, f"no response within {timeout:.2f}s") from exc

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

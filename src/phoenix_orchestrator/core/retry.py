from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from phoenix_orchestrator.core.errors import is_transient
from phoenix_orchestrator.core.models import RetryPolicy


@dataclass
class RetryOutcome:
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class RetryExecutor:
    """Runs an action up to ``policy.max_attempts`` times with a fixed delay.

    Errors that ``classify`` reports as permanent stop the loop after the
    attempt that raised them. The only suspension point is ``sleep``.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        sleep: Callable[[float], None] = time.sleep,
        classify: Callable[[BaseException], bool] = is_transient,
    ) -> None:
        self._logger = logger
        self._sleep = sleep
        self._classify = classify

    def execute(self, action: Callable[[], Any], policy: RetryPolicy, *, label: str = "action") -> RetryOutcome:
        last_error: Optional[BaseException] = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                value = action()
            except Exception as e:
                last_error = e
                if not self._classify(e):
                    self._logger.error(f"{label}: permanent failure on attempt {attempt}/{policy.max_attempts}: {e}")
                    return RetryOutcome(error=e, attempts=attempt)
                if attempt < policy.max_attempts:
                    self._logger.warning(
                        f"{label}: attempt {attempt}/{policy.max_attempts} failed: {e}. "
                        f"Retrying in {policy.delay_seconds}s..."
                    )
                    self._sleep(policy.delay_seconds)
                continue
            if attempt > 1:
                self._logger.info(f"{label}: succeeded on attempt {attempt}/{policy.max_attempts}")
            return RetryOutcome(value=value, attempts=attempt)

        self._logger.error(f"{label}: failed after {policy.max_attempts} attempts: {last_error}")
        return RetryOutcome(error=last_error, attempts=policy.max_attempts)


__all__ = ["RetryExecutor", "RetryOutcome"]

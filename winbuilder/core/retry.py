# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Retry utilities.

`RetryExecutor` is the fixed-delay wrapper the providers use for fallible
host operations (with an optional cleanup hook between attempts and a
critical/non-critical outcome). `retry_operation` provides exponential
backoff for short races such as drive-letter assignment.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Callable, Optional, Tuple, Type, TypeVar, Union

from .logging_utils import safe_logger

T = TypeVar("T")

ExcTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


class RetryExecutor:
    """
    Run an operation up to `max_retries` times.

    On each failed attempt:
      - log the failure (unless suppress_log)
      - run `cleanup_on_failure` if given; its own failure is only logged
      - sleep `retry_delay` seconds before the next attempt

    When all attempts fail, a critical operation re-raises the last error and
    a non-critical one logs a warning and returns `default`.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, *, sleep: Callable[[float], None] = time.sleep):
        self.logger = safe_logger(logger)
        self._sleep = sleep

    def execute(
        self,
        operation: Callable[[], T],
        name: str,
        *,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        cleanup_on_failure: Optional[Callable[[], Any]] = None,
        critical: bool = True,
        suppress_log: bool = False,
        default: Any = None,
        retry_on: ExcTypes = Exception,
    ) -> T:
        attempts = max(1, int(max_retries))
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                result = operation()
                if attempt > 1 and not suppress_log:
                    self.logger.info("%s succeeded on attempt %d/%d", name, attempt, attempts)
                return result
            except retry_on as e:
                last_error = e
                if not suppress_log:
                    self.logger.warning("%s failed (attempt %d/%d): %s", name, attempt, attempts, e)

                if cleanup_on_failure is not None:
                    self._run_cleanup(name, cleanup_on_failure)

                if attempt < attempts and retry_delay > 0:
                    self._sleep(retry_delay)

        if critical:
            if not suppress_log:
                self.logger.error("%s failed after %d attempts: %s", name, attempts, last_error)
            if last_error is not None:
                raise last_error
            raise RuntimeError(f"{name} failed with no exception recorded")

        self.logger.warning("%s failed after %d attempts (non-critical, continuing): %s", name, attempts, last_error)
        return default

    def _run_cleanup(self, name: str, cleanup: Callable[[], Any]) -> None:
        try:
            cleanup()
        except Exception as ce:
            self.logger.warning("Cleanup after failed %s also failed: %s", name, ce)


def _backoff(attempt: int, base_backoff_s: float, max_backoff_s: float, jitter_s: float) -> float:
    sleep_time = min(base_backoff_s * (2 ** (attempt - 1)), max_backoff_s)
    if jitter_s > 0:
        sleep_time += random.uniform(0, jitter_s)
    return sleep_time


def retry_operation(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_backoff_s: float = 2.0,
    max_backoff_s: float = 60.0,
    jitter_s: float = 1.0,
    exceptions: ExcTypes = Exception,
    operation_name: str = "operation",
    logger: Optional[logging.Logger] = None,
    log_level: int = logging.WARNING,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Retry an operation with exponential backoff and re-raise the last error.

        letter = retry_operation(
            lambda: assign_letter(disk),
            max_attempts=4,
            operation_name="drive letter assignment",
            logger=logger,
        )
    """
    last_exception: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except exceptions as e:
            last_exception = e
            if attempt >= max_attempts:
                if logger:
                    logger.log(logging.ERROR, "%s failed after %d attempts: %s", operation_name, max_attempts, e)
                break

            sleep_time = _backoff(attempt, base_backoff_s, max_backoff_s, jitter_s)
            if logger:
                logger.log(
                    log_level,
                    "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                    operation_name,
                    attempt,
                    max_attempts,
                    e,
                    sleep_time,
                )
            sleep(sleep_time)

    if last_exception is not None:
        raise last_exception
    raise RuntimeError(f"{operation_name} failed with no exception recorded")


# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/drive_letters.py
"""
Drive-letter assignment for mounted disk images.

Windows may enumerate a freshly attached volume while we are assigning a
letter to it, so assignment is retried with backoff across a small pool of
candidates. Assignments are serialized within the process.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Iterable, Optional, Sequence, Set

import psutil

from ..core.exceptions import TransientFailure
from ..core.logging_utils import safe_logger
from ..core.retry import retry_operation

DEFAULT_POOL: Sequence[str] = ("W", "V", "U", "T", "S", "R", "Q")

_ASSIGN_LOCK = threading.Lock()


def letters_in_use() -> Set[str]:
    used: Set[str] = set()
    for part in psutil.disk_partitions(all=True):
        mp = (part.mountpoint or part.device or "").strip()
        if len(mp) >= 2 and mp[1] == ":":
            used.add(mp[0].upper())
    return used


def letter_visible(letter: str) -> bool:
    return os.path.exists(f"{letter}:\\")


class DriveLetterAllocator:
    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        *,
        pool: Iterable[str] = DEFAULT_POOL,
        in_use: Callable[[], Set[str]] = letters_in_use,
        visible: Callable[[str], bool] = letter_visible,
        max_attempts: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = safe_logger(logger)
        self.pool = [p.upper().rstrip(":") for p in pool]
        self._in_use = in_use
        self._visible = visible
        self.max_attempts = max_attempts
        self._sleep = sleep

    def _pick(self, tried: Set[str]) -> str:
        used = self._in_use()
        free = [p for p in self.pool if p not in used]
        if not free:
            raise TransientFailure(msg=f"No free drive letter in pool {','.join(self.pool)}")
        fresh = [p for p in free if p not in tried]
        return (fresh or free)[0]

    def assign(self, assign_fn: Callable[[str], None]) -> str:
        """
        Call `assign_fn(letter)` with candidate letters until one shows up
        as a visible volume. Returns the letter.
        """
        tried: Set[str] = set()

        def attempt() -> str:
            letter = self._pick(tried)
            tried.add(letter)
            self.logger.debug("Assigning drive letter %s:", letter)
            assign_fn(letter)
            if not self._visible(letter):
                raise TransientFailure(msg=f"Drive {letter}: not visible after assignment")
            return letter

        with _ASSIGN_LOCK:
            letter = retry_operation(
                attempt,
                max_attempts=self.max_attempts,
                base_backoff_s=0.5,
                max_backoff_s=4.0,
                jitter_s=0.25,
                operation_name="drive letter assignment",
                logger=self.logger,
                sleep=self._sleep,
            )
        self.logger.info("💽 Mounted volume at %s:", letter)
        return letter

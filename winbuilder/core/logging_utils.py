# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Shared logging helpers.

Components receive a logger from their caller. When the caller has none,
they still get a working logger instead of failing on the first message.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Generator, Optional


def safe_logger(logger: Optional[Any], default_name: str = "winbuilder") -> Any:
    """
    Return `logger` if it looks like a logger, else the named project logger.

    Anything exposing info/warning/error/debug is accepted so tests can pass
    a Mock or a recording fake.
    """
    if logger is not None and all(callable(getattr(logger, m, None)) for m in ("info", "warning", "error", "debug")):
        return logger
    lg = logging.getLogger(default_name)
    if not lg.handlers and not logging.getLogger().handlers:
        # Nobody configured logging: basic console output rather than silence.
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    return lg


@contextmanager
def log_step(logger: Any, description: str) -> Generator[None, None, None]:
    """
    Log start, completion and elapsed time of a block; log and re-raise on error.

        with log_step(logger, "Creating VM disk"):
            ...
    """
    t0 = time.monotonic()
    logger.info("➡️  %s ...", description)
    try:
        yield
    except Exception as e:
        logger.error("💥 %s failed (%.2fs): %s", description, time.monotonic() - t0, e)
        raise
    logger.info("✅ %s done (%.2fs)", description, time.monotonic() - t0)

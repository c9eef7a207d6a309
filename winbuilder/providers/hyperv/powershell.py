# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/hyperv/powershell.py
"""
Windows PowerShell invocation for the Hyper-V module.

Every script runs with $ErrorActionPreference = 'Stop' so that a failing
cmdlet produces a non-zero exit instead of a warning on stderr.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from ...core.exceptions import ExternalCommandFailed
from ...core.logging_utils import safe_logger
from ...core.process import ProcessControl, ProcessResult

_PRELUDE = "$ErrorActionPreference = 'Stop'; $ProgressPreference = 'SilentlyContinue'; "


def ps_quote(value: Any) -> str:
    """Single-quoted PowerShell literal."""
    return "'" + str(value).replace("'", "''") + "'"


def ps_bool(flag: bool) -> str:
    return "$true" if flag else "$false"


class PowerShellRunner:
    def __init__(
        self,
        process: ProcessControl,
        logger: Optional[logging.Logger] = None,
        *,
        exe: str = "powershell.exe",
        timeout_s: float = 120.0,
    ):
        self.process = process
        self.logger = safe_logger(logger)
        self.exe = exe
        self.timeout_s = timeout_s

    def argv(self, script: str) -> list:
        return [
            self.exe,
            "-NoProfile",
            "-NonInteractive",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            _PRELUDE + script,
        ]

    def run(self, script: str, *, timeout: Optional[float] = None, check: bool = True) -> ProcessResult:
        return self.process.run(self.argv(script), timeout=timeout or self.timeout_s, check=check)

    def run_text(self, script: str, **kw: Any) -> str:
        return self.run(script, **kw).stdout.strip()

    def run_json(self, script: str, **kw: Any) -> Any:
        """Run `script`, pipe its output through ConvertTo-Json and decode it. Empty output is None."""
        res = self.run(f"{script} | ConvertTo-Json -Depth 4 -Compress", **kw)
        text = res.stdout.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ExternalCommandFailed(
                msg=f"PowerShell returned invalid JSON: {e}",
                cause=e,
                command=res.command,
                exit_code=res.exit_code,
                stdout=res.stdout,
                stderr=res.stderr,
            ) from e

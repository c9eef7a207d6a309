# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/core/process.py
"""
Uniform subprocess invocation for every backend helper.

All host tools (vmrun, vmware-vdiskmanager, vmcli, diskpart, powershell,
robocopy) go through `ProcessControl.run`: one place that logs the command,
captures stdout and stderr, applies the tool's exit-code policy and turns
failures into `ExternalCommandFailed`.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple, Union

from .exceptions import ExternalCommandFailed
from .logging_utils import safe_logger
from .utils import U

ExitPolicy = Callable[[int], bool]

# Windows: keep helper tools from flashing a console window.
_CREATE_NO_WINDOW = getattr(subprocess, "CREATE_NO_WINDOW", 0)

_REDACTED = "***"


def zero_is_success(code: int) -> bool:
    return code == 0


def robocopy_success(code: int) -> bool:
    # robocopy: 0-7 are combinations of "copied / extra / mismatched", 8+ means failure.
    return 0 <= code < 8


@dataclass(frozen=True)
class ProcessResult:
    command: Tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str
    duration_s: float
    ok: bool

    @property
    def output(self) -> str:
        return "\n".join(x for x in (self.stdout, self.stderr) if x.strip())


class ProcessControl:
    """
    Run host commands with captured output and explicit timeouts.

    `timeout=None` is reserved for the one call that is allowed to block
    for as long as a guest runs (windowed VM start).
    """

    def __init__(self, logger: Optional[logging.Logger] = None, *, hide_windows: bool = True):
        self.logger = safe_logger(logger)
        self.hide_windows = hide_windows

    @staticmethod
    def _display(cmd: Sequence[str], secrets: Sequence[str]) -> str:
        shown = [_REDACTED if (secrets and a in secrets) else a for a in cmd]
        return U.pretty_cmd(shown)

    def run(
        self,
        cmd: Sequence[Union[str, Path]],
        *,
        timeout: Optional[float] = 120.0,
        success: ExitPolicy = zero_is_success,
        check: bool = True,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
        secrets: Sequence[str] = (),
    ) -> ProcessResult:
        argv = tuple(str(x) for x in cmd)
        pretty = self._display(argv, secrets)
        self.logger.debug("Running: %s (timeout=%s)", pretty, timeout)

        t0 = time.monotonic()
        try:
            cp = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
                cwd=str(cwd) if cwd is not None else None,
                env=env,
                input=input_text,
                creationflags=_CREATE_NO_WINDOW if self.hide_windows else 0,
            )
        except FileNotFoundError as e:
            self.logger.error("Command not found: %s", argv[0])
            raise ExternalCommandFailed(
                msg=f"Command not found: {argv[0]}",
                cause=e,
                command=self._redacted_argv(argv, secrets),
            ) from e
        except subprocess.TimeoutExpired as e:
            self.logger.error("Command timed out: %s (timeout=%ss)", pretty, timeout)
            raise ExternalCommandFailed(
                msg=f"Command timed out after {timeout}s: {pretty}",
                cause=e,
                command=self._redacted_argv(argv, secrets),
                stdout=U.to_text(e.stdout),
                stderr=U.to_text(e.stderr),
                context={"timeout_s": timeout},
            ) from e

        duration = time.monotonic() - t0
        stdout = (cp.stdout or "").strip()
        stderr = (cp.stderr or "").strip()
        ok = success(cp.returncode)
        result = ProcessResult(argv, cp.returncode, stdout, stderr, duration, ok)

        if stdout:
            self.logger.debug("stdout (%s):\n%s", argv[0], stdout)
        if stderr:
            self.logger.debug("stderr (%s):\n%s", argv[0], stderr)

        if ok:
            self.logger.debug("Exit %d in %.2fs: %s", cp.returncode, duration, pretty)
            return result

        if check:
            self.logger.error(
                "Command failed (exit %d): %s%s%s",
                cp.returncode,
                pretty,
                f"\nstdout:\n{stdout}" if stdout else "",
                f"\nstderr:\n{stderr}" if stderr else "",
            )
            raise ExternalCommandFailed(
                msg=f"Command failed with exit code {cp.returncode}: {pretty}",
                command=self._redacted_argv(argv, secrets),
                exit_code=cp.returncode,
                stdout=stdout,
                stderr=stderr,
            )

        self.logger.debug("Exit %d (unchecked) in %.2fs: %s", cp.returncode, duration, pretty)
        return result

    @staticmethod
    def _redacted_argv(argv: Sequence[str], secrets: Sequence[str]) -> Tuple[str, ...]:
        return tuple(_REDACTED if (secrets and a in secrets) else a for a in argv)

    def robocopy(self, src_dir: Path, dst_dir: Path, file_name: str, *, timeout: Optional[float] = 1800.0) -> ProcessResult:
        """Copy one file between directories with robocopy (restartable mode, bounded retries)."""
        return self.run(
            ["robocopy", str(src_dir), str(dst_dir), file_name, "/Z", "/R:2", "/W:5", "/NP", "/NFL", "/NDL"],
            timeout=timeout,
            success=robocopy_success,
        )

    def spawn(self, cmd: Sequence[Union[str, Path]]) -> int:
        """Launch a detached helper (e.g. a console viewer) and return its pid without waiting."""
        argv = [str(x) for x in cmd]
        self.logger.debug("Spawning: %s", U.pretty_cmd(argv))
        flags = getattr(subprocess, "DETACHED_PROCESS", 0) | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                creationflags=flags,
                close_fds=True,
            )
        except OSError as e:
            raise ExternalCommandFailed(msg=f"Could not launch {argv[0]}: {e}", cause=e, command=tuple(argv)) from e
        return proc.pid

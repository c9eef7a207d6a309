# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/vmware/diskpart.py
"""
VHD/VHDX lifecycle through diskpart scripts.

Workstation has no disk API for VHD(X), and the host may not have the
Hyper-V feature (and its storage cmdlets) enabled, so this goes through
`diskpart /s <script>`.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from ...core.exceptions import ExternalCommandFailed
from ...core.logging_utils import safe_logger
from ...core.process import ProcessControl, ProcessResult
from ..drive_letters import DriveLetterAllocator

_ERROR_MARKERS = (
    "diskpart has encountered an error",
    "virtual disk service error",
    "the system cannot find the file specified",
)


class DiskpartClient:
    def __init__(
        self,
        process: ProcessControl,
        logger: Optional[logging.Logger] = None,
        *,
        allocator: Optional[DriveLetterAllocator] = None,
        exe: str = "diskpart",
        timeout_s: float = 300.0,
    ):
        self.process = process
        self.logger = safe_logger(logger)
        self.allocator = allocator or DriveLetterAllocator(self.logger)
        self.exe = exe
        self.timeout_s = timeout_s

    def run_script(self, lines: List[str]) -> ProcessResult:
        fd, script = tempfile.mkstemp(prefix="winbuilder-diskpart-", suffix=".txt", text=True)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
            self.logger.debug("diskpart script:\n%s", "\n".join(lines))
            res = self.process.run([self.exe, "/s", script], timeout=self.timeout_s)
        finally:
            Path(script).unlink(missing_ok=True)

        # diskpart sometimes exits 0 after a failed command.
        low = res.output.lower()
        if any(m in low for m in _ERROR_MARKERS):
            raise ExternalCommandFailed(
                msg="diskpart reported an error",
                command=res.command,
                exit_code=res.exit_code,
                stdout=res.stdout,
                stderr=res.stderr,
            )
        return res

    def create(self, path: Path, size_bytes: int, *, label: str = "WINBUILD") -> None:
        """Create an expandable VHD(X) with one NTFS partition, leaving it detached."""
        size_mb = max(1, size_bytes // (1024 * 1024))
        try:
            self.run_script(
                [
                    f'create vdisk file="{path}" maximum={size_mb} type=expandable',
                    f'select vdisk file="{path}"',
                    "attach vdisk",
                    "create partition primary",
                    f'format fs=ntfs quick label="{label}"',
                    "detach vdisk",
                ]
            )
        except ExternalCommandFailed:
            self.logger.warning("Creating %s failed; detaching and deleting the partial image", path)
            if Path(path).exists():
                try:
                    self.detach(path)
                except ExternalCommandFailed as e:
                    self.logger.warning("Detach of %s failed: %s", path, e)
                try:
                    Path(path).unlink(missing_ok=True)
                except OSError as e:
                    self.logger.warning("Could not delete %s: %s", path, e)
            raise

    def attach(self, path: Path) -> str:
        """Attach the image and give its first partition a drive letter."""
        self.run_script([f'select vdisk file="{path}"', "attach vdisk"])
        try:
            return self.allocator.assign(lambda letter: self._assign_letter(path, letter))
        except Exception:
            self.logger.warning("Drive letter assignment failed for %s; detaching", path)
            self.detach(path)
            raise

    def _assign_letter(self, path: Path, letter: str) -> None:
        self.run_script(
            [
                f'select vdisk file="{path}"',
                "select partition 1",
                f"assign letter={letter}",
            ]
        )

    def detach(self, path: Path) -> None:
        self.run_script([f'select vdisk file="{path}"', "detach vdisk"])

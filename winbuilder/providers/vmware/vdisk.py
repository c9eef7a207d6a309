# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/vmware/vdisk.py
"""VMDK creation through vmcli (when installed) or vmware-vdiskmanager."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from ...core.logging_utils import safe_logger
from ...core.process import ProcessControl


class VmdkTool:
    """
    `vmcli` ships only with newer Workstation releases. Whether it is
    present is decided by the caller once, at provider construction.
    """

    def __init__(
        self,
        process: ProcessControl,
        vdiskmanager: Path,
        *,
        vmcli: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
        timeout_s: float = 600.0,
    ):
        self.process = process
        self.vdiskmanager = Path(vdiskmanager)
        self.vmcli = Path(vmcli) if vmcli else None
        self.logger = safe_logger(logger)
        self.timeout_s = timeout_s

    def create(self, path: Path, size_bytes: int) -> Path:
        path = Path(path)
        size_mb = max(1, size_bytes // (1024 * 1024))
        if self.vmcli is not None:
            self.logger.debug("Creating %s with vmcli", path)
            cmd = [str(self.vmcli), "Disk", "Create", "-f", str(path), "-a", "nvme", "-s", f"{size_mb}MB", "-t", "0"]
        else:
            self.logger.debug("Creating %s with vmware-vdiskmanager", path)
            # -t 0: single growable file
            cmd = [str(self.vdiskmanager), "-c", "-s", f"{size_mb}MB", "-a", "lsilogic", "-t", "0", str(path)]
        self.process.run(cmd, timeout=self.timeout_s)
        return path

# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/vmware/vmrun.py
"""vmrun CLI wrapper (VMware Workstation, host type `ws`)."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

from ...core.process import ProcessControl, ProcessResult
from ...core.utils import U

# Observed on headless start when a guest feature (3D, encrypted vTPM)
# needs an interactive session.
CANCELED_SIGNATURE = "operation was canceled"


class VmrunClient:
    def __init__(self, process: ProcessControl, vmrun_path: Path, *, timeout_s: float = 120.0):
        self.process = process
        self.vmrun_path = Path(vmrun_path)
        self.timeout_s = timeout_s

    def _argv(self, command: str, vmx: Optional[Path], *args: str, password: Optional[str] = None) -> List[str]:
        argv = [str(self.vmrun_path), "-T", "ws"]
        if password:
            argv += ["-vp", password]
        argv.append(command)
        if vmx is not None:
            argv.append(str(vmx))
        argv.extend(args)
        return argv

    def _run(
        self,
        command: str,
        vmx: Optional[Path],
        *args: str,
        password: Optional[str] = None,
        check: bool = True,
        timeout: Optional[float] = -1,
    ) -> ProcessResult:
        return self.process.run(
            self._argv(command, vmx, *args, password=password),
            timeout=self.timeout_s if timeout == -1 else timeout,
            check=check,
            secrets=(password,) if password else (),
        )

    def start(self, vmx: Path, *, gui: bool, password: Optional[str] = None) -> ProcessResult:
        """
        `nogui` returns as soon as the VM is launched. `gui` blocks until the
        guest powers off, so it runs without a timeout.
        """
        return self._run(
            "start",
            vmx,
            "gui" if gui else "nogui",
            password=password,
            check=False,
            timeout=None if gui else self.timeout_s,
        )

    def stop(self, vmx: Path, *, hard: bool, password: Optional[str] = None) -> ProcessResult:
        return self._run("stop", vmx, "hard" if hard else "soft", password=password)

    def suspend(self, vmx: Path, *, password: Optional[str] = None) -> ProcessResult:
        return self._run("suspend", vmx, "hard", password=password)

    def delete_vm(self, vmx: Path, *, password: Optional[str] = None) -> ProcessResult:
        return self._run("deleteVM", vmx, password=password)

    def list_running(self) -> List[str]:
        """
        Paths of running VMs. Raises ExternalCommandFailed when vmrun itself
        fails (version skew between vmrun and the running product does that).
        """
        res = self._run("list", None)
        return parse_list_output(res.stdout)

    def guest_ip(self, vmx: Path, *, password: Optional[str] = None) -> Optional[str]:
        res = self._run("getGuestIPAddress", vmx, password=password, check=False)
        if not res.ok:
            return None
        return parse_ip(res.stdout)


def parse_list_output(stdout: str) -> List[str]:
    lines = [ln.strip() for ln in (stdout or "").splitlines() if ln.strip()]
    return [ln for ln in lines if not ln.lower().startswith("total running vms")]


def parse_ip(text: str) -> Optional[str]:
    return U.first_routable_ip(text)


def is_canceled(outputs: Sequence[str]) -> bool:
    return any(CANCELED_SIGNATURE in (o or "").lower() for o in outputs)

# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/vmware/state.py
"""
Power-state reconciliation for VMware Workstation VMs.

Workstation has no registry we can ask, and `vmrun list` breaks when the
vmrun binary and the running product disagree on version. Signals are
consulted in order and the first conclusive one wins:

  1. process table: a vmware-vmx process whose command line names our .vmx
  2. `vmrun list`
  3. the VM's memory-backing file held open with a sharing lock

A VM is reported Off only on positive evidence: a lock file that opens
exclusively, or a complete process scan and a working `vmrun list` that both
agree it is not there. Anything else is Unknown.
"""

from __future__ import annotations

import ctypes
import errno
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import psutil

from ...core.exceptions import ExternalCommandFailed
from ...core.logging_utils import safe_logger
from ...core.utils import U
from ..models import VMState
from .vmrun import VmrunClient

VMX_PROCESS_PREFIX = "vmware-vmx"

# ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION
_SHARING_VIOLATION = {32, 33}

_GENERIC_READ = 0x80000000
_OPEN_EXISTING = 3
_FILE_ATTRIBUTE_NORMAL = 0x80
_INVALID_HANDLE_VALUE = ctypes.c_void_p(-1).value


class Signal(str, Enum):
    MATCH = "match"
    NO_MATCH = "no_match"
    INCONCLUSIVE = "inconclusive"


@dataclass
class ProcessScan:
    signal: Signal
    pid: Optional[int] = None
    unreadable: int = 0


@dataclass
class StateReport:
    state: VMState
    source: str
    notes: List[str] = field(default_factory=list)


ProcessIter = Callable[[], Iterable["psutil.Process"]]


def _default_process_iter() -> Iterable["psutil.Process"]:
    return psutil.process_iter(["pid", "name", "cmdline"])


def scan_vmx_processes(vmx: Path, process_iter: ProcessIter = _default_process_iter) -> ProcessScan:
    """
    Look for a vmware-vmx process that has `vmx` on its command line.
    Unreadable candidate processes (other sessions, access denied) make a
    miss inconclusive.
    """
    unreadable = 0
    try:
        procs = list(process_iter())
    except Exception:
        return ProcessScan(Signal.INCONCLUSIVE)

    for proc in procs:
        try:
            info = getattr(proc, "info", None) or {}
            name = (info.get("name") or proc.name() or "").lower()
            if not name.startswith(VMX_PROCESS_PREFIX):
                continue
            cmdline = info.get("cmdline")
            if cmdline is None:
                cmdline = proc.cmdline()
        except (psutil.AccessDenied, psutil.ZombieProcess):
            unreadable += 1
            continue
        except psutil.NoSuchProcess:
            continue

        if not cmdline:
            unreadable += 1
            continue
        if U.path_in_text(vmx, " ".join(cmdline)):
            return ProcessScan(Signal.MATCH, pid=getattr(proc, "pid", None))

    return ProcessScan(Signal.INCONCLUSIVE if unreadable else Signal.NO_MATCH, unreadable=unreadable)


def lock_file_for(vmx: Path) -> Path:
    return vmx.with_suffix(".vmem")


def suspend_file_for(vmx: Path) -> Path:
    return vmx.with_suffix(".vmss")


def open_exclusive(path: Path) -> None:
    """
    Open `path` for reading with share mode 0 and close it again.

    Raises OSError with `winerror` set when Windows refuses the open. Share
    modes do not exist elsewhere, so other hosts always raise ENOTSUP.
    """
    if os.name != "nt":
        raise OSError(errno.ENOTSUP, "exclusive open requires Windows share modes", str(path))

    from ctypes import wintypes

    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)  # type: ignore[attr-defined]
    kernel32.CreateFileW.argtypes = [
        wintypes.LPCWSTR,
        wintypes.DWORD,
        wintypes.DWORD,
        wintypes.LPVOID,
        wintypes.DWORD,
        wintypes.DWORD,
        wintypes.HANDLE,
    ]
    kernel32.CreateFileW.restype = wintypes.HANDLE
    kernel32.CloseHandle.argtypes = [wintypes.HANDLE]

    handle = kernel32.CreateFileW(str(path), _GENERIC_READ, 0, None, _OPEN_EXISTING, _FILE_ATTRIBUTE_NORMAL, None)
    if handle is None or handle == _INVALID_HANDLE_VALUE:
        code = ctypes.get_last_error()
        raise OSError(None, ctypes.FormatError(code), str(path), code)  # type: ignore[attr-defined]
    kernel32.CloseHandle(handle)


def probe_lock_file(path: Path, opener: Optional[Callable[[Path], None]] = None) -> Signal:
    """
    MATCH: another process holds the file (sharing or lock violation)
    NO_MATCH: the exclusive open succeeded
    INCONCLUSIVE: no file, access denied, or any other error
    """
    if not path.exists():
        return Signal.INCONCLUSIVE
    try:
        (opener or open_exclusive)(path)
    except OSError as e:
        if getattr(e, "winerror", None) in _SHARING_VIOLATION:
            return Signal.MATCH
        return Signal.INCONCLUSIVE
    return Signal.NO_MATCH


class VmwareStateDetector:
    def __init__(
        self,
        vmrun: VmrunClient,
        logger: Optional[logging.Logger] = None,
        *,
        process_iter: ProcessIter = _default_process_iter,
    ):
        self.vmrun = vmrun
        self.logger = safe_logger(logger)
        self.process_iter = process_iter

    def find_process(self, vmx: Path) -> ProcessScan:
        return scan_vmx_processes(vmx, self.process_iter)

    def _list_signal(self, vmx: Path) -> Signal:
        try:
            running = self.vmrun.list_running()
        except ExternalCommandFailed as e:
            self.logger.debug("vmrun list unusable: %s", e)
            return Signal.INCONCLUSIVE
        target = U.normalize_host_path(vmx)
        if any(U.normalize_host_path(p) == target for p in running):
            return Signal.MATCH
        return Signal.NO_MATCH

    def detect(self, vmx: Path) -> StateReport:
        vmx = Path(vmx)
        notes: List[str] = []

        scan = self.find_process(vmx)
        if scan.signal is Signal.MATCH:
            return StateReport(VMState.RUNNING, "process", [f"pid={scan.pid}"])
        notes.append(f"process scan: {scan.signal.value} (unreadable={scan.unreadable})")

        listed = self._list_signal(vmx)
        if listed is Signal.MATCH:
            return StateReport(VMState.RUNNING, "vmrun-list", notes)
        notes.append(f"vmrun list: {listed.value}")

        lock = probe_lock_file(lock_file_for(vmx))
        if lock is Signal.MATCH:
            return StateReport(VMState.RUNNING, "lock-file", notes)
        if lock is Signal.NO_MATCH:
            return StateReport(self._off_or_saved(vmx), "lock-file", notes)
        notes.append("lock file: absent or unreadable")

        if scan.signal is Signal.NO_MATCH and listed is Signal.NO_MATCH:
            return StateReport(self._off_or_saved(vmx), "process+vmrun-list", notes)

        self.logger.debug("State of %s is indeterminate: %s", vmx, "; ".join(notes))
        return StateReport(VMState.UNKNOWN, "none", notes)

    @staticmethod
    def _off_or_saved(vmx: Path) -> VMState:
        return VMState.SAVED if suspend_file_for(vmx).exists() else VMState.OFF


def describe(report: StateReport) -> str:
    return f"{report.state.value} (via {report.source}{': ' + '; '.join(report.notes) if report.notes else ''})"

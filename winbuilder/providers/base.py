# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/base.py
"""
Lifecycle contract shared by all virtualization backends.

Callers are expected to probe with test_available() before the first real
operation and to treat every method as fallible (see core.exceptions).
"""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path, PureWindowsPath
from typing import Callable, List, Optional, Sequence, Tuple

from ..config.settings import BuilderSettings
from ..core.cleanup_registry import CleanupRegistry, ResourceType
from ..core.exceptions import (
    BackendUnavailable,
    ConfigurationInvalid,
    ExternalCommandFailed,
    StateIndeterminate,
    VMNotFound,
)
from ..core.logger import Log
from ..core.logging_utils import safe_logger
from ..core.process import ProcessControl
from ..core.retry import RetryExecutor
from ..core.utils import U
from .models import (
    AvailabilityReport,
    DiskFormat,
    Firmware,
    HypervisorKind,
    NetworkMode,
    ProviderCapabilities,
    StartOutcome,
    ValidationResult,
    VMConfiguration,
    VMInfo,
    VMState,
)

_VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.-]{0,99}$")


def validate_against_capabilities(config: VMConfiguration, caps: ProviderCapabilities) -> ValidationResult:
    """
    Pure check of a configuration against a capability descriptor.
    Never touches the host.
    """
    res = ValidationResult()

    if not _VM_NAME_RE.match(config.name or ""):
        res.errors.append(f"Invalid VM name {config.name!r}: use letters, digits, space, '.', '_' or '-'")

    if config.memory_bytes < caps.min_memory_bytes:
        res.errors.append(
            f"Memory {U.human_bytes(config.memory_bytes)} is below the minimum {U.human_bytes(caps.min_memory_bytes)}"
        )
    if config.memory_bytes > caps.max_memory_bytes:
        res.errors.append(
            f"Memory {U.human_bytes(config.memory_bytes)} exceeds the maximum {U.human_bytes(caps.max_memory_bytes)}"
        )

    if config.processor_count < 1:
        res.errors.append("Processor count must be at least 1")
    elif config.processor_count > caps.max_processors:
        res.errors.append(f"Processor count {config.processor_count} exceeds the maximum {caps.max_processors}")

    if config.disk_format not in caps.disk_formats:
        supported = ", ".join(sorted(f.value for f in caps.disk_formats))
        res.errors.append(f"Disk format {config.disk_format.value} is not supported (supported: {supported})")
    if Path(config.disk_path).suffix.lower() != f".{config.disk_format.value}":
        res.errors.append(f"Disk path {config.disk_path} does not match format {config.disk_format.value}")
    if config.disk_size_bytes < 1024**3:
        res.errors.append("Disk size must be at least 1 GiB")

    if config.iso_path is not None and Path(config.iso_path).suffix.lower() != ".iso":
        res.errors.append(f"Boot media {config.iso_path} is not an .iso file")

    if config.network_mode is NetworkMode.SWITCH and not config.switch_name:
        res.errors.append("Network mode 'switch' requires a switch name")

    if config.secure_boot_enabled:
        if config.firmware is not Firmware.UEFI:
            res.errors.append("Secure boot requires UEFI firmware")
        elif not caps.supports_secure_boot:
            res.errors.append("Secure boot is not supported by this provider")

    if config.tpm_enabled:
        if not caps.supports_tpm:
            res.warnings.append("TPM requested but not supported; the VM will be created without TPM")
        elif config.firmware is not Firmware.UEFI:
            res.warnings.append("TPM requested on BIOS firmware; the VM will be created without TPM")

    if config.dynamic_memory and not caps.supports_dynamic_memory:
        res.warnings.append("Dynamic memory requested but not supported; static memory will be used")

    return res


class VirtualizationProvider(ABC):
    kind: HypervisorKind
    capabilities: ProviderCapabilities

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        *,
        settings: Optional[BuilderSettings] = None,
        process: Optional[ProcessControl] = None,
        cleanup: Optional[CleanupRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = safe_logger(logger)
        self.settings = settings or BuilderSettings()
        self.process = process or ProcessControl(self.logger)
        self.cleanup = cleanup
        self._sleep = sleep
        self.retry = RetryExecutor(self.logger, sleep=sleep)

    # -- validation / availability -------------------------------------

    def validate_configuration(self, config: VMConfiguration) -> ValidationResult:
        res = validate_against_capabilities(config, self.capabilities)
        self._validate_backend_specific(config, res)
        return res

    def _validate_backend_specific(self, config: VMConfiguration, res: ValidationResult) -> None:
        """Hook for backend-only rules. Must stay pure."""

    def _preflight(self, config: VMConfiguration) -> ValidationResult:
        res = self.validate_configuration(config)
        for w in res.warnings:
            Log.warn(self.logger, w, vm=config.name)
        if not res.is_valid:
            for e in res.errors:
                self.logger.error("Invalid configuration for %s: %s", config.name, e)
            raise ConfigurationInvalid(
                msg=f"Configuration for {config.name!r} is invalid: {'; '.join(res.errors)}",
                errors=list(res.errors),
                warnings=list(res.warnings),
            )
        return res

    def test_available(self) -> bool:
        return self.get_availability_details().is_available

    @abstractmethod
    def get_availability_details(self) -> AvailabilityReport:
        ...

    def require_available(self) -> None:
        report = self.get_availability_details()
        if not report.is_available:
            raise BackendUnavailable(
                msg=f"{self.kind.value} is not available: {'; '.join(report.issues) or 'unknown reason'}",
                issues=list(report.issues),
                context=dict(report.details),
            )

    # -- VM lifecycle ------------------------------------------------------

    @abstractmethod
    def create_vm(self, config: VMConfiguration) -> VMInfo:
        ...

    @abstractmethod
    def start_vm(self, vm: VMInfo, show_console: bool = False) -> StartOutcome:
        ...

    @abstractmethod
    def stop_vm(self, vm: VMInfo, force: bool = False) -> None:
        ...

    @abstractmethod
    def suspend_vm(self, vm: VMInfo) -> None:
        ...

    @abstractmethod
    def remove_vm(self, vm: VMInfo, remove_disks: bool = False) -> None:
        ...

    @abstractmethod
    def get_vm(self, name: str) -> Optional[VMInfo]:
        ...

    def require_vm(self, name: str) -> VMInfo:
        vm = self.get_vm(name)
        if vm is None:
            raise VMNotFound(msg=f"VM not found: {name}", context={"provider": self.kind.value})
        return vm

    @abstractmethod
    def get_vm_state(self, vm: VMInfo) -> VMState:
        ...

    @abstractmethod
    def get_vm_ip_address(self, vm: VMInfo) -> Optional[str]:
        ...

    def wait_for_state(
        self,
        vm: VMInfo,
        desired: VMState,
        *,
        timeout_s: Optional[float] = None,
        interval_s: Optional[float] = None,
    ) -> VMState:
        """Poll get_vm_state() until `desired` or the timeout; returns the last observed state."""
        timeout_s = self.settings.stop_timeout_s if timeout_s is None else timeout_s
        interval_s = max(0.05, self.settings.poll_interval_s if interval_s is None else interval_s)
        waited = 0.0
        state = self.get_vm_state(vm)
        while state is not desired and waited < timeout_s:
            self._sleep(interval_s)
            waited += interval_s
            state = self.get_vm_state(vm)
        vm.state = state
        return state

    # -- shared helpers for implementations ----------------------------------

    def _rollback(self, name: str, steps: List[Tuple[str, Callable[[], object]]]) -> None:
        """Undo completed creation steps newest-first. Undo failures are logged, never raised."""
        for label, undo in reversed(steps):
            try:
                undo()
                self.logger.info("↩️  Rolled back %s for %s", label, name)
            except Exception as e:
                self.logger.error("Rollback of %s for %s failed: %s", label, name, e)

    def _stage_iso(self, iso: Path, dest_dir: Path, vm_name: str) -> Tuple[Path, Optional[str]]:
        """
        Copy an ISO that lives on a network share next to the VM.
        Returns the path to attach and the TempFile cleanup id (None when
        nothing was copied).
        """
        if not U.is_unc_path(iso):
            return Path(iso), None
        src = PureWindowsPath(str(iso))
        U.ensure_dir(dest_dir)
        self.logger.info("📦 Staging %s into %s", src, dest_dir)
        self.process.robocopy(Path(str(src.parent)), dest_dir, src.name)
        staged = Path(dest_dir) / src.name
        entry_id = None
        if self.cleanup is not None:
            entry_id = self.cleanup.register(
                f"staged ISO for {vm_name}",
                ResourceType.TEMP_FILE,
                str(staged),
                lambda: U.safe_unlink(staged),
            )
        return staged, entry_id

    def _release_cleanup(self, vm: VMInfo) -> None:
        """Drop the VM's cleanup entry. Only called once removal has finished."""
        entry_id = vm.extra.pop("cleanup_id", None)
        if entry_id and self.cleanup is not None:
            self.cleanup.unregister(entry_id)

    def _drop_staged(self, staged: Path, entry_id: str) -> None:
        U.safe_unlink(staged)
        if self.cleanup is not None:
            self.cleanup.unregister(entry_id)

    def _settle_after_stop(self, vm: VMInfo, force: bool, command: Sequence[str]) -> None:
        final = self.wait_for_state(vm, VMState.OFF)
        if final is VMState.OFF:
            Log.ok(self.logger, f"{vm.name} is off", vm=vm.name)
            return
        if not force:
            Log.warn(self.logger, f"{vm.name} still {final.value} after graceful shutdown request", vm=vm.name)
            return
        if final is VMState.UNKNOWN:
            raise StateIndeterminate(msg=f"State of {vm.name} is unknown after hard stop", context={"vm": vm.name})
        raise ExternalCommandFailed(msg=f"{vm.name} is still {final.value} after hard stop", command=tuple(command))

    # -- boot media ----------------------------------------------------------

    @abstractmethod
    def attach_iso(self, vm: VMInfo, iso_path: Path) -> None:
        ...

    @abstractmethod
    def detach_iso(self, vm: VMInfo) -> None:
        ...

    # -- disks -----------------------------------------------------------------

    @abstractmethod
    def new_virtual_disk(self, path: Path, size_bytes: int, disk_format: Optional[DiskFormat] = None) -> Path:
        ...

    @abstractmethod
    def mount_virtual_disk(self, path: Path) -> str:
        """Attach a disk image to the host and return its drive letter (e.g. "W")."""
        ...

    @abstractmethod
    def dismount_virtual_disk(self, path: Path) -> None:
        ...

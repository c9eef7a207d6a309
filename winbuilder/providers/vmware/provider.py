# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/vmware/provider.py
"""
VMware Workstation backend.

Workstation has no VM registry and no management API on Windows hosts, so
everything here is driven by command-line tools (vmrun,
vmware-vdiskmanager, optional vmcli, diskpart, robocopy) and by editing the
VM's .vmx file directly. A VM's identity is its name; lookups scan for the
.vmx under the configured VM root.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
import time
from contextlib import contextmanager
from pathlib import Path, PureWindowsPath
from typing import Callable, Dict, Generator, List, Optional, Tuple

from ...config.settings import BuilderSettings
from ...core.cleanup_registry import CleanupRegistry, ResourceType
from ...core.exceptions import (
    ConfigurationInvalid,
    ExternalCommandFailed,
    TransientFailure,
    VMNotFound,
)
from ...core.logger import Log
from ...core.logging_utils import log_step
from ...core.process import ProcessControl
from ...core.secrets import SecretSource
from ...core.utils import U
from ..base import VirtualizationProvider
from ..drive_letters import DriveLetterAllocator
from ..models import (
    AvailabilityReport,
    DiskFormat,
    Firmware,
    HypervisorKind,
    NetworkMode,
    ProviderCapabilities,
    StartOutcome,
    VMConfiguration,
    VMInfo,
    VMState,
)
from .diskpart import DiskpartClient
from .state import ProcessIter, Signal, VmwareStateDetector, _default_process_iter, describe
from .vdisk import VmdkTool
from .vmrun import VmrunClient, is_canceled
from .vmx import VmxFile, get_value, vmx_bool

VMRUN_EXE = "vmrun.exe"
VDISKMANAGER_EXE = "vmware-vdiskmanager.exe"
VMCLI_EXE = "vmcli.exe"

CDROM_SLOT = "sata0:1"
BOOT_ORDER_KEY = "bios.bootOrder"
KEYSAFE_KEY = "encryption.keySafe"
VTPM_KEY = "managedvm.autoAddVTPM"

# Per-VM files that are not disks. Removed with the VM when disks are kept.
_VM_ARTIFACT_SUFFIXES = (".vmx", ".vmxf", ".vmsd", ".nvram", ".vmem", ".vmss", ".scoreboard", ".log")

_NETWORK_TYPES = {
    NetworkMode.NAT: "nat",
    NetworkMode.BRIDGED: "bridged",
    NetworkMode.HOST_ONLY: "hostonly",
    NetworkMode.SWITCH: "custom",
}


def disk_slot(firmware: Firmware) -> str:
    # Workstation cannot boot NVMe under legacy BIOS.
    return "nvme0:0" if firmware is Firmware.UEFI else "sata0:0"


def _install_candidates(settings: BuilderSettings) -> List[Path]:
    out: List[Path] = []
    if settings.vmware_install_path:
        out.append(Path(settings.vmware_install_path))
    for env in ("ProgramFiles(x86)", "ProgramFiles"):
        base = os.environ.get(env)
        if base:
            out.append(Path(base) / "VMware" / "VMware Workstation")
    return out


class VmwareWorkstationProvider(VirtualizationProvider):
    kind = HypervisorKind.VMWARE
    capabilities = ProviderCapabilities(
        supports_tpm=True,
        supports_secure_boot=True,
        supports_dynamic_memory=False,
        supports_snapshots=True,
        disk_formats=frozenset({DiskFormat.VMDK}),
        max_memory_bytes=128 * 1024**3,
        max_processors=32,
    )

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        *,
        settings: Optional[BuilderSettings] = None,
        process: Optional[ProcessControl] = None,
        cleanup: Optional[CleanupRegistry] = None,
        secrets: Optional[SecretSource] = None,
        process_iter: ProcessIter = _default_process_iter,
        allocator: Optional[DriveLetterAllocator] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(logger, settings=settings, process=process, cleanup=cleanup, sleep=sleep)
        self.secrets = secrets

        # Probed once; the provider never re-discovers tools per call.
        self.install_path: Optional[Path] = self._discover_install_path()
        tools = self.install_path
        self.vmrun_path = tools / VMRUN_EXE if tools else Path(VMRUN_EXE)
        self.vdiskmanager_path = tools / VDISKMANAGER_EXE if tools else Path(VDISKMANAGER_EXE)
        self.vmcli_path: Optional[Path] = self._probe_vmcli()

        self.vmrun = VmrunClient(self.process, self.vmrun_path, timeout_s=self.settings.command_timeout_s)
        self.detector = VmwareStateDetector(self.vmrun, self.logger, process_iter=process_iter)
        self.vdisk = VmdkTool(self.process, self.vdiskmanager_path, vmcli=self.vmcli_path, logger=self.logger)
        self.diskpart = DiskpartClient(
            self.process,
            self.logger,
            allocator=allocator or DriveLetterAllocator(self.logger, sleep=sleep),
        )

        self._known: Dict[str, Path] = {}
        self._mounts: Dict[str, str] = {}

    # -- discovery -------------------------------------------------------------

    def _discover_install_path(self) -> Optional[Path]:
        for cand in _install_candidates(self.settings):
            if (cand / VMRUN_EXE).is_file():
                self.logger.debug("VMware Workstation found at %s", cand)
                return cand
        found = U.which("vmrun") or U.which(VMRUN_EXE)
        if found:
            return Path(found).parent
        self.logger.debug("VMware Workstation install path not found")
        return None

    def _probe_vmcli(self) -> Optional[Path]:
        if self.install_path is None:
            return None
        p = self.install_path / VMCLI_EXE
        if p.is_file():
            self.logger.debug("vmcli available: %s", p)
            return p
        return None

    def get_availability_details(self) -> AvailabilityReport:
        issues: List[str] = []
        details: Dict[str, object] = {
            "host": platform.system(),
            "install_path": str(self.install_path) if self.install_path else None,
            "vmrun": str(self.vmrun_path),
            "vdiskmanager": str(self.vdiskmanager_path),
            "vmcli": bool(self.vmcli_path),
        }
        if self.install_path is None:
            issues.append("VMware Workstation installation not found")
        else:
            if not self.vmrun_path.is_file():
                issues.append(f"vmrun not found at {self.vmrun_path}")
            if not self.vdiskmanager_path.is_file() and self.vmcli_path is None:
                issues.append(f"vmware-vdiskmanager not found at {self.vdiskmanager_path}")
        return AvailabilityReport(is_available=not issues, issues=issues, details=details)

    # -- helpers ---------------------------------------------------------------

    def _vmx_for(self, vm: VMInfo) -> Path:
        if vm.config_path is None:
            raise VMNotFound(msg=f"VM {vm.name} has no .vmx path", context={"vm": vm.name})
        return Path(vm.config_path)

    @contextmanager
    def _password(self, vmx: Path, name: str) -> Generator[Optional[str], None, None]:
        """Yield the encryption password for an encrypted VM, else None."""
        if not vmx.is_file() or VmxFile(vmx, self.logger).get(KEYSAFE_KEY) is None:
            yield None
            return
        if self.secrets is None:
            raise ConfigurationInvalid(
                msg=f"VM {name} is encrypted but no secret source is configured",
                errors=["encrypted VM requires a secret source"],
            )
        with self.secrets.get_secret(f"vm-encryption:{name}") as secret:
            yield secret.reveal()

    def _invalidate_boot_cache(self, vmx: Path) -> None:
        """
        Workstation keeps the last successful boot device in the NVRAM file
        and ignores bios.bootOrder while it exists.
        """
        candidates = {vmx.with_suffix(".nvram")}
        named = VmxFile(vmx, self.logger).get("nvram")
        if named:
            candidates.add(vmx.parent / named)
        for p in candidates:
            if U.safe_unlink(p):
                self.logger.info("Removed boot-order cache %s", p)

    def _build_vmx(self, config: VMConfiguration, disk: Path, iso: Optional[Path]) -> Dict[str, str]:
        slot = disk_slot(config.firmware)
        controller = slot.split(":", 1)[0]
        disk_ref = disk.name if disk.parent == config.path else str(disk)
        values: Dict[str, str] = {
            ".encoding": "UTF-8",
            "config.version": "8",
            "virtualHW.version": "19",
            "displayName": config.name,
            "guestOS": config.guest_os,
            "memsize": str(config.memory_mb),
            "numvcpus": str(config.processor_count),
            "firmware": "efi" if config.firmware is Firmware.UEFI else "bios",
            f"{controller}.present": "TRUE",
            f"{slot}.present": "TRUE",
            f"{slot}.fileName": disk_ref,
            "sata0.present": "TRUE",
            BOOT_ORDER_KEY: "hdd,cdrom",
            "mks.enable3d": "FALSE",
            "tools.syncTime": "TRUE",
        }
        if config.firmware is Firmware.UEFI:
            values["uefi.secureBoot.enabled"] = vmx_bool(config.secure_boot_enabled)

        if iso is not None:
            values.update(
                {
                    f"{CDROM_SLOT}.present": "TRUE",
                    f"{CDROM_SLOT}.deviceType": "cdrom-image",
                    f"{CDROM_SLOT}.fileName": str(iso),
                    f"{CDROM_SLOT}.startConnected": "TRUE",
                }
            )

        if config.network_mode is NetworkMode.NONE:
            values["ethernet0.present"] = "FALSE"
        else:
            values["ethernet0.present"] = "TRUE"
            values["ethernet0.virtualDev"] = "e1000e"
            values["ethernet0.connectionType"] = _NETWORK_TYPES[config.network_mode]
            if config.network_mode is NetworkMode.SWITCH:
                values["ethernet0.vnet"] = str(config.switch_name)
        return values

    def _enable_tpm(self, vmx_file: VmxFile) -> bool:
        vmx_file.update({VTPM_KEY: "software"})
        mismatches = vmx_file.verify({VTPM_KEY: "software"})
        if mismatches:
            raise TransientFailure(msg=f"vTPM setting not persisted: {'; '.join(mismatches)}")
        return True

    # -- lifecycle -------------------------------------------------------------

    def create_vm(self, config: VMConfiguration) -> VMInfo:
        self._preflight(config)
        self.require_available()

        vmx_path = Path(config.path) / f"{config.name}.vmx"
        if vmx_path.exists() or self._find_vmx(config.name) is not None:
            raise ConfigurationInvalid(
                msg=f"VM {config.name!r} already exists",
                errors=[f"existing VM at {vmx_path}"],
            )

        Log.step(self.logger, f"Creating VMware VM {config.describe()}", vm=config.name)
        done: List[Tuple[str, Callable[[], object]]] = []
        vmx_file = VmxFile(vmx_path, self.logger)
        disk = Path(config.disk_path)
        tpm_ok = False

        try:
            if not Path(config.path).exists():
                U.ensure_dir(Path(config.path))
                done.append(("VM directory", lambda: shutil.rmtree(config.path)))

            if not disk.exists():
                self.new_virtual_disk(disk, config.disk_size_bytes, config.disk_format, register=False)
                done.append(("virtual disk", lambda: U.safe_unlink(disk)))

            iso = None
            if config.iso_path is not None:
                iso, staged_id = self._stage_iso(Path(config.iso_path), Path(config.path), config.name)
                if staged_id is not None:
                    done.append(("staged ISO", lambda: self._drop_staged(iso, staged_id)))

            vmx_file.write(self._build_vmx(config, disk, iso))
            done.append(("VMX", lambda: U.safe_unlink(vmx_path)))
            self._known[config.name] = vmx_path

            if config.tpm_enabled and config.firmware is Firmware.UEFI:
                tpm_ok = bool(
                    self.retry.execute(
                        lambda: self._enable_tpm(vmx_file),
                        f"vTPM configuration for {config.name}",
                        max_retries=self.settings.max_retries,
                        retry_delay=self.settings.retry_delay_s,
                        critical=False,
                        default=False,
                    )
                )
                if not tpm_ok:
                    Log.warn(self.logger, "Continuing without TPM", vm=config.name)
        except Exception as e:
            Log.fail(self.logger, f"Creating {config.name} failed: {e}", vm=config.name)
            self._known.pop(config.name, None)
            self._rollback(config.name, done)
            raise

        info = VMInfo(
            name=config.name,
            id=config.name,
            kind=self.kind,
            state=VMState.OFF,
            config_path=vmx_path,
            disk_path=disk,
            extra={"tpm": tpm_ok, "iso": str(iso) if iso else None},
        )
        if self.cleanup is not None:
            info.extra["cleanup_id"] = self.cleanup.register(
                f"VM {config.name}",
                ResourceType.VM,
                str(vmx_path),
                lambda: self.remove_vm(info, remove_disks=True),
            )
        Log.ok(self.logger, f"Created {config.name} ({vmx_path})", vm=config.name)
        return info

    def start_vm(self, vm: VMInfo, show_console: bool = False) -> StartOutcome:
        vmx = self._vmx_for(vm)
        with self._password(vmx, vm.name) as password:
            if show_console:
                return self._start_windowed(vm, vmx, password)

            self.logger.info("▶️  Starting %s headless", vm.name)
            res = self.vmrun.start(vmx, gui=False, password=password)
            if not res.ok:
                if is_canceled([res.stdout, res.stderr]):
                    Log.warn(
                        self.logger,
                        f"Headless start of {vm.name} was canceled; retrying with a console window",
                        vm=vm.name,
                    )
                    return self._start_windowed(vm, vmx, password)
                raise ExternalCommandFailed(
                    msg=f"Headless start of {vm.name} failed (exit {res.exit_code})",
                    command=res.command,
                    exit_code=res.exit_code,
                    stdout=res.stdout,
                    stderr=res.stderr,
                )

        waited = 0.0
        interval = max(0.05, self.settings.poll_interval_s)
        while True:
            scan = self.detector.find_process(vmx)
            if scan.signal is Signal.MATCH:
                vm.state = VMState.RUNNING
                Log.ok(self.logger, f"{vm.name} is running (pid {scan.pid})", vm=vm.name)
                return StartOutcome.RUNNING
            if waited >= self.settings.headless_start_timeout_s:
                break
            self._sleep(interval)
            waited += interval

        Log.fail(self.logger, f"{vm.name}: no VM process after headless start", vm=vm.name)
        raise ExternalCommandFailed(
            msg=f"{vm.name} reported started but no VM process appeared within "
            f"{self.settings.headless_start_timeout_s:.0f}s",
            command=(str(self.vmrun_path), "start", str(vmx), "nogui"),
            exit_code=0,
        )

    def _start_windowed(self, vm: VMInfo, vmx: Path, password: Optional[str]) -> StartOutcome:
        # Blocks until the guest powers itself off.
        self.logger.info("🖥️  Starting %s with console (blocks until the guest shuts down)", vm.name)
        res = self.vmrun.start(vmx, gui=True, password=password)
        if not res.ok:
            Log.fail(self.logger, f"Windowed start of {vm.name} failed; giving up", vm=vm.name)
            raise ExternalCommandFailed(
                msg=f"Windowed start of {vm.name} failed (exit {res.exit_code})",
                command=res.command,
                exit_code=res.exit_code,
                stdout=res.stdout,
                stderr=res.stderr,
            )

        scan = self.detector.find_process(vmx)
        if scan.signal is Signal.MATCH:
            vm.state = VMState.RUNNING
            return StartOutcome.RUNNING

        # Success and no process: the guest ran and shut down during the call.
        vm.state = VMState.OFF
        Log.ok(self.logger, f"{vm.name} ran to completion", vm=vm.name)
        return StartOutcome.COMPLETED

    def stop_vm(self, vm: VMInfo, force: bool = False) -> None:
        vmx = self._vmx_for(vm)
        state = self.get_vm_state(vm)
        if state in (VMState.OFF, VMState.SAVED):
            self.logger.info("%s is already %s; nothing to stop", vm.name, state.value)
            return

        self.logger.info("⏹️  Stopping %s (%s)", vm.name, "hard" if force else "soft")
        with self._password(vmx, vm.name) as password:
            self.vmrun.stop(vmx, hard=force, password=password)

        self._settle_after_stop(vm, force, (str(self.vmrun_path), "stop", str(vmx), "hard" if force else "soft"))

    def suspend_vm(self, vm: VMInfo) -> None:
        vmx = self._vmx_for(vm)
        self.logger.info("⏸️  Suspending %s", vm.name)
        with self._password(vmx, vm.name) as password:
            self.vmrun.suspend(vmx, password=password)
        state = self.wait_for_state(vm, VMState.SAVED)
        if state is not VMState.SAVED:
            Log.warn(self.logger, f"{vm.name} is {state.value} after suspend", vm=vm.name)

    def remove_vm(self, vm: VMInfo, remove_disks: bool = False) -> None:
        vmx = Path(vm.config_path) if vm.config_path else None
        if vmx is None or not vmx.exists():
            self.logger.info("VM %s has no artifacts; nothing to remove", vm.name)
            self._known.pop(vm.name, None)
            self._release_cleanup(vm)
            return

        with log_step(self.logger, f"Removing VM {vm.name}"):
            state = self.get_vm_state(vm)
            if state is VMState.RUNNING:
                self.stop_vm(vm, force=True)
            elif state is VMState.UNKNOWN:
                with self._password(vmx, vm.name) as password:
                    self.retry.execute(
                        lambda: self.vmrun.stop(vmx, hard=True, password=password),
                        f"hard stop of {vm.name}",
                        max_retries=1,
                        critical=False,
                    )

            vm_dir = vmx.parent
            if remove_disks:
                with self._password(vmx, vm.name) as password:
                    self.retry.execute(
                        lambda: self.vmrun.delete_vm(vmx, password=password),
                        f"vmrun deleteVM {vm.name}",
                        max_retries=1,
                        critical=False,
                    )
                if vm.disk_path and Path(vm.disk_path).parent != vm_dir:
                    U.safe_unlink(Path(vm.disk_path))
                if vm_dir.exists():
                    shutil.rmtree(vm_dir)
            else:
                for p in vm_dir.iterdir():
                    if p.is_file() and p.name.lower().endswith(_VM_ARTIFACT_SUFFIXES):
                        U.safe_unlink(p)
                    elif p.is_dir() and p.name.lower().endswith(".lck"):
                        shutil.rmtree(p, ignore_errors=True)

        self._known.pop(vm.name, None)
        vm.state = VMState.OFF
        self._release_cleanup(vm)

    # -- queries -----------------------------------------------------------------

    def _find_vmx(self, name: str) -> Optional[Path]:
        known = self._known.get(name)
        if known is not None and known.is_file():
            return known
        direct = Path(self.settings.vm_root) / name / f"{name}.vmx"
        if direct.is_file():
            return direct
        root = Path(self.settings.vm_root)
        if not root.is_dir():
            return None
        for cand in sorted(root.glob("*/*.vmx")):
            try:
                display = VmxFile(cand, self.logger).get("displayName")
            except OSError as e:
                self.logger.debug("Skipping unreadable %s: %s", cand, e)
                continue
            if cand.stem == name or display == name:
                return cand
        return None

    def get_vm(self, name: str) -> Optional[VMInfo]:
        vmx = self._find_vmx(name)
        if vmx is None:
            return None
        values = VmxFile(vmx, self.logger).read()
        disk_ref = get_value(values, f"{disk_slot(Firmware.UEFI)}.fileName") or get_value(
            values, f"{disk_slot(Firmware.BIOS)}.fileName"
        )
        disk = None
        if disk_ref:
            disk = Path(disk_ref)
            if not (disk.is_absolute() or PureWindowsPath(disk_ref).is_absolute()):
                disk = vmx.parent / disk_ref
        info = VMInfo(name=name, id=name, kind=self.kind, config_path=vmx, disk_path=disk)
        info.state = self.get_vm_state(info)
        return info

    def get_vm_state(self, vm: VMInfo) -> VMState:
        vmx = self._vmx_for(vm)
        if not vmx.is_file():
            raise VMNotFound(msg=f"VM {vm.name}: {vmx} does not exist", context={"vm": vm.name})
        report = self.detector.detect(vmx)
        self.logger.debug("State of %s: %s", vm.name, describe(report))
        if report.state is VMState.UNKNOWN:
            Log.warn_once(self.logger, f"unknown-state:{vmx}", f"Could not determine state of {vm.name}", vm=vm.name)
        vm.state = report.state
        return report.state

    def get_vm_ip_address(self, vm: VMInfo) -> Optional[str]:
        vmx = self._vmx_for(vm)
        with self._password(vmx, vm.name) as password:
            return self.vmrun.guest_ip(vmx, password=password)

    # -- boot media --------------------------------------------------------------

    def _rewrite_boot_media(self, vm: VMInfo, changes: Dict[str, Optional[str]]) -> None:
        vmx = self._vmx_for(vm)
        if self.get_vm_state(vm) is VMState.RUNNING:
            Log.warn(self.logger, f"{vm.name} is running; boot media changes apply after restart", vm=vm.name)
        self._invalidate_boot_cache(vmx)
        vmx_file = VmxFile(vmx, self.logger)
        vmx_file.update(changes)
        for m in vmx_file.verify(changes):
            Log.warn(self.logger, f"VMX verification mismatch for {vm.name}: {m}", vm=vm.name)

    def attach_iso(self, vm: VMInfo, iso_path: Path) -> None:
        vmx = self._vmx_for(vm)
        iso, _ = self._stage_iso(Path(iso_path), vmx.parent, vm.name)
        self.logger.info("💿 Attaching %s to %s", iso, vm.name)
        self._rewrite_boot_media(
            vm,
            {
                f"{CDROM_SLOT}.present": "TRUE",
                f"{CDROM_SLOT}.deviceType": "cdrom-image",
                f"{CDROM_SLOT}.fileName": str(iso),
                f"{CDROM_SLOT}.startConnected": "TRUE",
                BOOT_ORDER_KEY: "cdrom,hdd",
            },
        )
        vm.extra["iso"] = str(iso)

    def detach_iso(self, vm: VMInfo) -> None:
        self.logger.info("⏏️  Detaching boot media from %s", vm.name)
        self._rewrite_boot_media(
            vm,
            {
                f"{CDROM_SLOT}.fileName": None,
                f"{CDROM_SLOT}.startConnected": "FALSE",
                BOOT_ORDER_KEY: "hdd",
            },
        )
        vm.extra["iso"] = None

    # -- disks -------------------------------------------------------------------

    def new_virtual_disk(
        self,
        path: Path,
        size_bytes: int,
        disk_format: Optional[DiskFormat] = None,
        *,
        register: bool = True,
    ) -> Path:
        path = Path(path)
        fmt = disk_format or DiskFormat.from_path(path)
        if path.exists():
            raise ConfigurationInvalid(msg=f"Disk already exists: {path}", errors=[f"exists: {path}"])
        U.ensure_dir(path.parent)

        with log_step(self.logger, f"Creating {fmt.value} disk {path} ({U.human_bytes(size_bytes)})"):
            if fmt is DiskFormat.VMDK:
                self.vdisk.create(path, size_bytes)
            else:
                self.diskpart.create(path, size_bytes)

        if register and self.cleanup is not None:
            self.cleanup.register(f"disk {path.name}", ResourceType.DISK, str(path), lambda: U.safe_unlink(path))
        return path

    def mount_virtual_disk(self, path: Path) -> str:
        path = Path(path)
        if DiskFormat.from_path(path) is DiskFormat.VMDK:
            raise ConfigurationInvalid(
                msg=f"Cannot mount {path}: only VHD/VHDX images can be attached on the host",
                errors=["vmdk is not mountable"],
            )
        letter = self.diskpart.attach(path)
        if self.cleanup is not None:
            self._mounts[U.normalize_host_path(path)] = self.cleanup.register(
                f"mount {path.name}",
                ResourceType.IMAGE_MOUNT,
                str(path),
                lambda: self.diskpart.detach(path),
            )
        return letter

    def dismount_virtual_disk(self, path: Path) -> None:
        path = Path(path)
        self.diskpart.detach(path)
        entry_id = self._mounts.pop(U.normalize_host_path(path), None)
        if entry_id and self.cleanup is not None:
            self.cleanup.unregister(entry_id)
        self.logger.info("Dismounted %s", path)

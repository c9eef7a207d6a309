# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/hyperv/provider.py
"""
Hyper-V backend driven through the Hyper-V PowerShell module.

Hyper-V has a real VM registry and reliable state reporting, so this
provider is mostly a thin binding. The parts that need care:

  - boot order is read back after every change and logged
  - TPM needs a Host Guardian Service guardian (plus its certificates) as
    key protector owner; TPM failures are non-fatal but the guardian is
    tracked and removed if creation fails later
"""

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ...config.settings import BuilderSettings
from ...core.cleanup_registry import CleanupRegistry, ResourceType
from ...core.exceptions import ConfigurationInvalid, ExternalCommandFailed, VMNotFound
from ...core.logger import Log
from ...core.logging_utils import log_step
from ...core.process import ProcessControl
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
    ValidationResult,
    VMConfiguration,
    VMInfo,
    VMState,
)
from .powershell import PowerShellRunner, ps_bool, ps_quote

DEFAULT_SWITCH = "Default Switch"
GUARDIAN_PREFIX = "winbuilder-"
SHIELDED_CERT_STORE = r"Cert:\LocalMachine\Shielded VM Local Certificates"

# Hyper-V reports transitional states too; fold them onto the closed enum.
_STATE_MAP = {
    "off": VMState.OFF,
    "offcritical": VMState.OFF,
    "running": VMState.RUNNING,
    "runningcritical": VMState.RUNNING,
    "starting": VMState.RUNNING,
    "stopping": VMState.RUNNING,
    "reset": VMState.RUNNING,
    "resuming": VMState.RUNNING,
    "paused": VMState.PAUSED,
    "pausing": VMState.PAUSED,
    "pausedcritical": VMState.PAUSED,
    "saved": VMState.SAVED,
    "saving": VMState.SAVED,
    "fastsaved": VMState.SAVED,
    "fastsaving": VMState.SAVED,
    "savedcritical": VMState.SAVED,
}

# First-boot device as reported by Get-VMFirmware (gen 2) / Get-VMBios (gen 1).
_BOOT_DEVICE = {
    (2, "disk"): "HardDiskDrive",
    (2, "dvd"): "DvdDrive",
    (1, "disk"): "IDE",
    (1, "dvd"): "CD",
}

_GEN1_ORDER = {
    "disk": '@("IDE", "CD", "LegacyNetworkAdapter", "Floppy")',
    "dvd": '@("CD", "IDE", "LegacyNetworkAdapter", "Floppy")',
}


def map_state(raw: Optional[str]) -> VMState:
    return _STATE_MAP.get(str(raw or "").replace(" ", "").lower(), VMState.UNKNOWN)


def guardian_name(vm_name: str) -> str:
    return f"{GUARDIAN_PREFIX}{vm_name}"


class HyperVProvider(VirtualizationProvider):
    kind = HypervisorKind.HYPERV
    capabilities = ProviderCapabilities(
        supports_tpm=True,
        supports_secure_boot=True,
        supports_dynamic_memory=True,
        supports_snapshots=True,
        disk_formats=frozenset({DiskFormat.VHDX, DiskFormat.VHD}),
        max_memory_bytes=12 * 1024**4,
        max_processors=240,
    )

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        *,
        settings: Optional[BuilderSettings] = None,
        process: Optional[ProcessControl] = None,
        cleanup: Optional[CleanupRegistry] = None,
        powershell: Optional[PowerShellRunner] = None,
        allocator: Optional[DriveLetterAllocator] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(logger, settings=settings, process=process, cleanup=cleanup, sleep=sleep)
        self.ps = powershell or PowerShellRunner(
            self.process,
            self.logger,
            exe=self.settings.powershell,
            timeout_s=self.settings.command_timeout_s,
        )
        self.allocator = allocator or DriveLetterAllocator(self.logger, sleep=sleep)
        self._mounts: Dict[str, str] = {}

    # -- validation / availability -------------------------------------------

    def _validate_backend_specific(self, config: VMConfiguration, res: ValidationResult) -> None:
        if config.memory_bytes % (2 * 1024 * 1024):
            res.errors.append("Hyper-V memory must be a multiple of 2 MiB")
        if config.firmware is Firmware.UEFI and config.disk_format is DiskFormat.VHD:
            res.errors.append("Generation 2 VMs cannot boot from a VHD; use VHDX")
        if config.network_mode in (NetworkMode.BRIDGED, NetworkMode.HOST_ONLY) and not config.switch_name:
            res.errors.append(f"Network mode '{config.network_mode.value}' needs an external/internal switch name")

    def get_availability_details(self) -> AvailabilityReport:
        script = (
            "$svc = Get-Service -Name vmms -ErrorAction SilentlyContinue; "
            "$status = if ($svc) { [string]$svc.Status } else { '' }; "
            "$mod = [bool](Get-Module -ListAvailable -Name Hyper-V); "
            "$id = [Security.Principal.WindowsIdentity]::GetCurrent(); "
            "$admin = ([Security.Principal.WindowsPrincipal]$id).IsInRole("
            "[Security.Principal.WindowsBuiltInRole]::Administrator); "
            "[pscustomobject]@{ Service = $status; Module = $mod; Admin = $admin }"
        )
        try:
            probe = self.ps.run_json(script) or {}
        except ExternalCommandFailed as e:
            return AvailabilityReport(
                is_available=False,
                issues=[f"PowerShell probe failed: {e}"],
                details={"powershell": self.settings.powershell},
            )

        issues: List[str] = []
        service = str(probe.get("Service") or "")
        if not service:
            issues.append("Hyper-V Virtual Machine Management service (vmms) is not installed")
        elif service.lower() != "running":
            issues.append(f"vmms service is {service}, not Running")
        if not probe.get("Module"):
            issues.append("Hyper-V PowerShell module is not installed")
        if not probe.get("Admin"):
            issues.append("Hyper-V management requires an elevated (administrator) session")
        details = {"service": service or None, "module": bool(probe.get("Module")), "admin": bool(probe.get("Admin"))}
        return AvailabilityReport(is_available=not issues, issues=issues, details=details)

    # -- boot order ------------------------------------------------------------

    def _generation(self, vm: VMInfo) -> int:
        gen = vm.extra.get("generation")
        if gen is None:
            gen = int(self.ps.run_text(f"(Get-VM -Name {ps_quote(vm.name)}).Generation") or 2)
            vm.extra["generation"] = gen
        return int(gen)

    def _first_boot_device(self, name: str, generation: int) -> str:
        q = ps_quote(name)
        if generation == 2:
            script = (
                f"$b = (Get-VMFirmware -VMName {q}).BootOrder | Select-Object -First 1; "
                "if ($b -and $b.Device) { $b.Device.GetType().Name } elseif ($b) { [string]$b.BootType }"
            )
        else:
            script = f"(Get-VMBios -VMName {q}).StartupOrder | Select-Object -First 1"
        return self.ps.run_text(script)

    def _set_first_boot(self, name: str, generation: int, device: str) -> None:
        """Point the first boot device at the disk or the DVD drive and verify by reading it back."""
        q = ps_quote(name)
        before = self._first_boot_device(name, generation)
        if generation == 2:
            getter = "Get-VMHardDiskDrive" if device == "disk" else "Get-VMDvdDrive"
            self.ps.run(
                f"$d = {getter} -VMName {q} | Select-Object -First 1; "
                f"if (-not $d) {{ throw 'no {device} device on VM' }}; "
                f"Set-VMFirmware -VMName {q} -FirstBootDevice $d"
            )
        else:
            self.ps.run(f"Set-VMBios -VMName {q} -StartupOrder {_GEN1_ORDER[device]}")
        after = self._first_boot_device(name, generation)

        self.logger.info("🥾 Boot order for %s: %s -> %s", name, before or "?", after or "?")
        expected = _BOOT_DEVICE[(generation, device)]
        if after != expected:
            Log.warn(self.logger, f"First boot device of {name} is {after!r}, expected {expected!r}", vm=name)

    # -- TPM ---------------------------------------------------------------------

    def _remove_guardian(self, name: str) -> None:
        g = ps_quote(name)
        self.ps.run(
            f"Get-ChildItem -Path {ps_quote(SHIELDED_CERT_STORE)} -ErrorAction SilentlyContinue | "
            f"Where-Object {{ $_.Subject -like ('*' + {g} + '*') }} | Remove-Item -Force; "
            f"Remove-HgsGuardian -Name {g} -ErrorAction SilentlyContinue"
        )
        self.logger.info("Removed HGS guardian %s and its certificates", name)

    def _enable_tpm(self, vm_name: str, guardians: List[str]) -> bool:
        g = guardian_name(vm_name)
        if g not in guardians:
            guardians.append(g)
        q = ps_quote(vm_name)
        self.ps.run(
            f"$g = Get-HgsGuardian -Name {ps_quote(g)} -ErrorAction SilentlyContinue; "
            f"if (-not $g) {{ $g = New-HgsGuardian -Name {ps_quote(g)} -GenerateCertificates }}; "
            "$kp = New-HgsKeyProtector -Owner $g -AllowUntrustedRoot; "
            f"Set-VMKeyProtector -VMName {q} -KeyProtector $kp.RawData; "
            f"Enable-VMTPM -VMName {q}"
        )
        return True

    # -- lifecycle -------------------------------------------------------------

    def _switch_for(self, config: VMConfiguration) -> Optional[str]:
        if config.network_mode is NetworkMode.NONE:
            return None
        if config.switch_name:
            return config.switch_name
        return self.settings.hyperv_switch or DEFAULT_SWITCH

    def create_vm(self, config: VMConfiguration) -> VMInfo:
        self._preflight(config)
        self.require_available()
        if self.get_vm(config.name) is not None:
            raise ConfigurationInvalid(msg=f"VM {config.name!r} already exists", errors=["duplicate VM name"])

        Log.step(self.logger, f"Creating Hyper-V VM {config.describe()}", vm=config.name)
        q = ps_quote(config.name)
        gen = config.firmware.generation
        disk = Path(config.disk_path)
        prepared: List[Tuple[str, Callable[[], object]]] = []
        done: List[Tuple[str, Callable[[], object]]] = []
        guardians: List[str] = []
        tpm_ok = False
        iso: Optional[Path] = None

        try:
            if not Path(config.path).exists():
                U.ensure_dir(Path(config.path))
                prepared.append(("VM directory", lambda: shutil.rmtree(config.path)))

            if not disk.exists():
                self.new_virtual_disk(disk, config.disk_size_bytes, config.disk_format, register=False)
                prepared.append(("virtual disk", lambda: U.safe_unlink(disk)))

            switch = self._switch_for(config)
            self.ps.run(
                f"New-VM -Name {q} -Path {ps_quote(config.path)} -Generation {gen} "
                f"-MemoryStartupBytes {config.memory_bytes} -VHDPath {ps_quote(disk)}"
                + (f" -SwitchName {ps_quote(switch)}" if switch else "")
                + " | Out-Null"
            )
            done.append(("VM registration", lambda: self.ps.run(f"Remove-VM -Name {q} -Force")))

            self.ps.run(f"Set-VMProcessor -VMName {q} -Count {config.processor_count}")
            if config.dynamic_memory:
                self.ps.run(
                    f"Set-VMMemory -VMName {q} -DynamicMemoryEnabled {ps_bool(True)} "
                    f"-MinimumBytes {self.capabilities.min_memory_bytes} "
                    f"-StartupBytes {config.memory_bytes} -MaximumBytes {config.memory_bytes}"
                )
            else:
                self.ps.run(f"Set-VMMemory -VMName {q} -DynamicMemoryEnabled {ps_bool(False)}")

            if gen == 2:
                sb = "On" if config.secure_boot_enabled else "Off"
                template = " -SecureBootTemplate MicrosoftWindows" if config.secure_boot_enabled else ""
                self.ps.run(f"Set-VMFirmware -VMName {q} -EnableSecureBoot {sb}{template}")

                if config.tpm_enabled:
                    tpm_ok = bool(
                        self.retry.execute(
                            lambda: self._enable_tpm(config.name, guardians),
                            f"TPM configuration for {config.name}",
                            max_retries=self.settings.max_retries,
                            retry_delay=self.settings.retry_delay_s,
                            critical=False,
                            default=False,
                        )
                    )
                    if not tpm_ok:
                        Log.warn(self.logger, "Continuing without TPM", vm=config.name)

            if config.iso_path is not None:
                iso, staged_id = self._stage_iso(Path(config.iso_path), Path(config.path), config.name)
                if staged_id is not None:
                    done.append(("staged ISO", lambda: self._drop_staged(iso, staged_id)))
                self.ps.run(f"Add-VMDvdDrive -VMName {q} -Path {ps_quote(iso)}")

            self._set_first_boot(config.name, gen, "disk")
        except Exception as e:
            Log.fail(self.logger, f"Creating {config.name} failed: {e}", vm=config.name)
            # The VM goes first: its key protector references the guardian.
            self._rollback(config.name, done)
            self._rollback(config.name, [(f"guardian {g}", lambda g=g: self._remove_guardian(g)) for g in guardians])
            self._rollback(config.name, prepared)
            raise

        info = self.get_vm(config.name) or VMInfo(name=config.name, id=config.name, kind=self.kind)
        info.disk_path = disk
        info.extra.update(
            {
                "generation": gen,
                "tpm": tpm_ok,
                "guardian": guardians[0] if guardians else None,
                "iso": str(iso) if iso else None,
            }
        )
        if self.cleanup is not None:
            info.extra["cleanup_id"] = self.cleanup.register(
                f"VM {config.name}",
                ResourceType.VM,
                info.id,
                lambda: self.remove_vm(info, remove_disks=True),
            )
        Log.ok(self.logger, f"Created {config.name} (id {info.id})", vm=config.name)
        return info

    def start_vm(self, vm: VMInfo, show_console: bool = False) -> StartOutcome:
        q = ps_quote(vm.name)
        if self.get_vm_state(vm) is not VMState.RUNNING:
            self.logger.info("▶️  Starting %s", vm.name)
            self.ps.run(f"Start-VM -Name {q}")

        state = self.wait_for_state(vm, VMState.RUNNING, timeout_s=self.settings.headless_start_timeout_s)
        if state is not VMState.RUNNING:
            raise ExternalCommandFailed(
                msg=f"{vm.name} is {state.value} after Start-VM",
                command=tuple(self.ps.argv(f"Start-VM -Name {q}")),
            )
        if show_console:
            # vmconnect is a separate window; the VM runs regardless.
            self.process.spawn(["vmconnect.exe", "localhost", vm.name])
        Log.ok(self.logger, f"{vm.name} is running", vm=vm.name)
        return StartOutcome.RUNNING

    def stop_vm(self, vm: VMInfo, force: bool = False) -> None:
        state = self.get_vm_state(vm)
        if state is VMState.OFF:
            self.logger.info("%s is already Off; nothing to stop", vm.name)
            return
        flag = "-TurnOff -Force" if force else "-Force"
        self.logger.info("⏹️  Stopping %s (%s)", vm.name, "turn off" if force else "shut down")
        script = f"Stop-VM -Name {ps_quote(vm.name)} {flag}"
        self.ps.run(script, timeout=self.settings.stop_timeout_s)
        self._settle_after_stop(vm, force, self.ps.argv(script))

    def suspend_vm(self, vm: VMInfo) -> None:
        self.logger.info("⏸️  Saving %s", vm.name)
        self.ps.run(f"Save-VM -Name {ps_quote(vm.name)}", timeout=self.settings.stop_timeout_s)
        state = self.wait_for_state(vm, VMState.SAVED)
        if state is not VMState.SAVED:
            Log.warn(self.logger, f"{vm.name} is {state.value} after Save-VM", vm=vm.name)

    def remove_vm(self, vm: VMInfo, remove_disks: bool = False) -> None:
        current = self.get_vm(vm.name)
        if current is None:
            self.logger.info("VM %s is not registered; nothing to remove", vm.name)
            self._release_cleanup(vm)
            return

        q = ps_quote(vm.name)
        with log_step(self.logger, f"Removing VM {vm.name}"):
            if current.state is not VMState.OFF:
                self.ps.run(f"Stop-VM -Name {q} -TurnOff -Force", timeout=self.settings.stop_timeout_s)
            disks = self.ps.run_json(f"@(Get-VMHardDiskDrive -VMName {q} | ForEach-Object {{ $_.Path }})") or []
            if isinstance(disks, str):
                disks = [disks]
            self.ps.run(f"Remove-VM -Name {q} -Force")

            guardian = vm.extra.get("guardian") or guardian_name(vm.name)
            self.retry.execute(
                lambda: self._remove_guardian(guardian),
                f"guardian removal for {vm.name}",
                max_retries=1,
                critical=False,
            )

            if remove_disks:
                for d in disks:
                    if U.safe_unlink(Path(d)):
                        self.logger.info("Deleted disk %s", d)
                vm_dir = current.config_path
                if vm_dir and Path(vm_dir).is_dir() and U.normalize_host_path(vm_dir) != U.normalize_host_path(
                    self.settings.vm_root
                ):
                    shutil.rmtree(vm_dir)
        vm.state = VMState.OFF
        self._release_cleanup(vm)

    # -- queries -----------------------------------------------------------------

    def get_vm(self, name: str) -> Optional[VMInfo]:
        q = ps_quote(name)
        data = self.ps.run_json(
            f"Get-VM -Name {q} -ErrorAction SilentlyContinue | ForEach-Object {{ "
            "[pscustomobject]@{ Name = $_.Name; Id = $_.Id.ToString(); State = $_.State.ToString(); "
            "Path = $_.Path; Generation = $_.Generation; "
            "Disk = (Get-VMHardDiskDrive -VM $_ | Select-Object -First 1).Path } }"
        )
        if not data:
            return None
        if isinstance(data, list):
            if len(data) > 1:
                Log.warn(self.logger, f"{len(data)} VMs are named {name}; using the first", vm=name)
            data = data[0]
        return self._info_from(data)

    def _info_from(self, data: Dict[str, Any]) -> VMInfo:
        return VMInfo(
            name=str(data.get("Name")),
            id=str(data.get("Id") or data.get("Name")),
            kind=self.kind,
            state=map_state(data.get("State")),
            config_path=Path(data["Path"]) if data.get("Path") else None,
            disk_path=Path(data["Disk"]) if data.get("Disk") else None,
            extra={"generation": data.get("Generation")} if data.get("Generation") else {},
        )

    def get_vm_state(self, vm: VMInfo) -> VMState:
        raw = self.ps.run_text(
            f"$vm = Get-VM -Name {ps_quote(vm.name)} -ErrorAction SilentlyContinue; "
            "if ($vm) { $vm.State.ToString() } else { 'Missing' }"
        )
        if raw == "Missing":
            raise VMNotFound(msg=f"VM not found: {vm.name}", context={"provider": self.kind.value})
        state = map_state(raw)
        if state is VMState.UNKNOWN:
            Log.warn_once(self.logger, f"hyperv-state:{raw}", f"Unrecognised Hyper-V state {raw!r} for {vm.name}")
        vm.state = state
        return state

    def get_vm_ip_address(self, vm: VMInfo) -> Optional[str]:
        addrs = self.ps.run_json(f"@((Get-VMNetworkAdapter -VMName {ps_quote(vm.name)}).IPAddresses)")
        if isinstance(addrs, str):
            addrs = [addrs]
        return U.first_routable_ip(addrs or [])

    # -- boot media --------------------------------------------------------------

    def attach_iso(self, vm: VMInfo, iso_path: Path) -> None:
        q = ps_quote(vm.name)
        dest = Path(vm.config_path) if vm.config_path else Path(self.settings.vm_root) / vm.name
        iso, _ = self._stage_iso(Path(iso_path), dest, vm.name)
        self.logger.info("💿 Attaching %s to %s", iso, vm.name)
        self.ps.run(
            f"$d = Get-VMDvdDrive -VMName {q} | Select-Object -First 1; "
            f"if ($d) {{ Set-VMDvdDrive -VMName {q} -ControllerNumber $d.ControllerNumber "
            f"-ControllerLocation $d.ControllerLocation -Path {ps_quote(iso)} }} "
            f"else {{ Add-VMDvdDrive -VMName {q} -Path {ps_quote(iso)} }}"
        )
        self._set_first_boot(vm.name, self._generation(vm), "dvd")
        vm.extra["iso"] = str(iso)

    def detach_iso(self, vm: VMInfo) -> None:
        q = ps_quote(vm.name)
        self.logger.info("⏏️  Detaching boot media from %s", vm.name)
        self.ps.run(f"Get-VMDvdDrive -VMName {q} | Set-VMDvdDrive -Path $null")
        self._set_first_boot(vm.name, self._generation(vm), "disk")
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
        if fmt not in self.capabilities.disk_formats:
            raise ConfigurationInvalid(msg=f"Hyper-V cannot create {fmt.value} disks", errors=[f"format {fmt.value}"])
        if path.exists():
            raise ConfigurationInvalid(msg=f"Disk already exists: {path}", errors=[f"exists: {path}"])
        U.ensure_dir(path.parent)
        with log_step(self.logger, f"Creating {fmt.value} disk {path} ({U.human_bytes(size_bytes)})"):
            self.ps.run(f"New-VHD -Path {ps_quote(path)} -SizeBytes {int(size_bytes)} -Dynamic | Out-Null", timeout=600)
        if register and self.cleanup is not None:
            self.cleanup.register(f"disk {path.name}", ResourceType.DISK, str(path), lambda: U.safe_unlink(path))
        return path

    def mount_virtual_disk(self, path: Path) -> str:
        path = Path(path)
        p = ps_quote(path)
        self.ps.run(f"Mount-VHD -Path {p} -NoDriveLetter")

        def assign(letter: str) -> None:
            self.ps.run(
                f"Get-VHD -Path {p} | Get-Disk | Get-Partition | "
                "Where-Object { $_.Type -eq 'Basic' -or $_.Type -eq 'IFS' } | "
                f"Select-Object -First 1 | Set-Partition -NewDriveLetter {letter}"
            )

        try:
            letter = self.allocator.assign(assign)
        except Exception:
            self.logger.warning("Drive letter assignment failed for %s; dismounting", path)
            self.ps.run(f"Dismount-VHD -Path {p}", check=False)
            raise

        if self.cleanup is not None:
            self._mounts[U.normalize_host_path(path)] = self.cleanup.register(
                f"mount {path.name}",
                ResourceType.IMAGE_MOUNT,
                str(path),
                lambda: self.ps.run(f"Dismount-VHD -Path {p}"),
            )
        return letter

    def dismount_virtual_disk(self, path: Path) -> None:
        path = Path(path)
        self.ps.run(f"Dismount-VHD -Path {ps_quote(path)}")
        entry_id = self._mounts.pop(U.normalize_host_path(path), None)
        if entry_id and self.cleanup is not None:
            self.cleanup.unregister(entry_id)
        self.logger.info("Dismounted %s", path)

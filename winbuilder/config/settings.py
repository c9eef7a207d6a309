# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/config/settings.py
"""
Build settings loaded from YAML.

    provider: vmware
    vm_root: D:/BuildVMs
    vmware:
      install_path: C:/Program Files (x86)/VMware/VMware Workstation
    timeouts:
      headless_start_s: 60
    vm:
      name: win11-build
      memory: 8GiB
      processors: 4
      disk_size: 80GiB
      iso: D:/iso/Win11_23H2.iso
      tpm: true
      secure_boot: true
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..core.exceptions import ConfigurationInvalid
from ..core.logging_utils import safe_logger
from ..core.utils import U
from ..providers.models import DiskFormat, Firmware, NetworkMode, VMConfiguration


@dataclass(frozen=True)
class BuilderSettings:
    provider: str = "hyperv"
    vm_root: Path = Path("C:/BuildVMs")

    # Hyper-V
    hyperv_switch: Optional[str] = None
    powershell: str = "powershell.exe"

    # VMware Workstation
    vmware_install_path: Optional[Path] = None

    # Timeouts / polling (seconds)
    command_timeout_s: float = 120.0
    headless_start_timeout_s: float = 60.0
    stop_timeout_s: float = 120.0
    poll_interval_s: float = 2.0

    # Retry knobs
    max_retries: int = 3
    retry_delay_s: float = 2.0


_FLAT_ALIASES = {
    ("hyperv", "switch"): "hyperv_switch",
    ("hyperv", "powershell"): "powershell",
    ("vmware", "install_path"): "vmware_install_path",
    ("timeouts", "command_s"): "command_timeout_s",
    ("timeouts", "headless_start_s"): "headless_start_timeout_s",
    ("timeouts", "stop_s"): "stop_timeout_s",
    ("timeouts", "poll_interval_s"): "poll_interval_s",
    ("retry", "max_retries"): "max_retries",
    ("retry", "delay_s"): "retry_delay_s",
}

_PATH_FIELDS = {"vm_root", "vmware_install_path"}


def settings_from_mapping(data: Mapping[str, Any], logger: Optional[logging.Logger] = None) -> BuilderSettings:
    logger = safe_logger(logger)
    known = {f.name: f for f in fields(BuilderSettings)}
    values: Dict[str, Any] = {}

    for key, value in (data or {}).items():
        if key == "vm":
            continue
        if isinstance(value, Mapping):
            for sub, subval in value.items():
                target = _FLAT_ALIASES.get((key, sub))
                if target is None:
                    logger.warning("Ignoring unknown setting %s.%s", key, sub)
                    continue
                values[target] = subval
        elif key in known:
            values[key] = value
        else:
            logger.warning("Ignoring unknown setting %s", key)

    for k in list(values):
        if k in _PATH_FIELDS and values[k] is not None:
            values[k] = Path(str(values[k])).expanduser()

    if "provider" in values:
        values["provider"] = str(values["provider"]).strip().lower()

    try:
        return BuilderSettings(**values)
    except TypeError as e:
        raise ConfigurationInvalid(msg=f"Invalid settings: {e}", cause=e, errors=[str(e)])


def load_settings(path: Optional[Path], logger: Optional[logging.Logger] = None) -> BuilderSettings:
    """Load settings from a YAML file; a missing path yields defaults."""
    if path is None:
        return BuilderSettings()
    data = load_yaml(path)
    return settings_from_mapping(data, logger)


def load_yaml(path: Path) -> Dict[str, Any]:
    p = Path(path).expanduser()
    try:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationInvalid(msg=f"Config file not found: {p}", cause=e, errors=[f"missing: {p}"])
    except yaml.YAMLError as e:
        raise ConfigurationInvalid(msg=f"Config file is not valid YAML: {p}", cause=e, errors=[str(e)])
    if not isinstance(data, dict):
        raise ConfigurationInvalid(msg=f"Config root must be a mapping: {p}", errors=[f"root type {type(data).__name__}"])
    return data


def vm_configuration_from_mapping(vm: Mapping[str, Any], settings: BuilderSettings) -> VMConfiguration:
    """
    Build a VMConfiguration from a YAML `vm:` block.

    Only shape errors are reported here; capability limits are checked by
    the provider's validate_configuration().
    """
    errors = []
    name = str(vm.get("name") or "").strip()
    if not name:
        errors.append("vm.name is required")

    def _size(key: str, default: str) -> int:
        try:
            return U.human_to_bytes(vm.get(key, default))
        except ValueError as e:
            errors.append(f"vm.{key}: {e}")
            return 0

    memory = _size("memory", "4GiB")
    disk_size = _size("disk_size", "64GiB")

    try:
        processors = int(vm.get("processors", 2))
    except (TypeError, ValueError):
        errors.append(f"vm.processors: expected an integer, got {vm.get('processors')!r}")
        processors = 0

    try:
        disk_format = DiskFormat(str(vm.get("disk_format") or _default_disk_format(settings.provider)).lower())
    except ValueError:
        errors.append(f"vm.disk_format: unsupported value {vm.get('disk_format')!r}")
        disk_format = DiskFormat.VHDX

    try:
        firmware = Firmware(str(vm.get("firmware", "uefi")).lower())
    except ValueError:
        errors.append(f"vm.firmware: expected bios or uefi, got {vm.get('firmware')!r}")
        firmware = Firmware.UEFI

    try:
        network = NetworkMode(str(vm.get("network", "nat")).lower())
    except ValueError:
        errors.append(f"vm.network: unsupported mode {vm.get('network')!r}")
        network = NetworkMode.NAT

    if errors:
        raise ConfigurationInvalid(msg="Invalid VM configuration", errors=errors)

    vm_dir = Path(str(vm.get("path") or (settings.vm_root / name)))
    disk_path = Path(str(vm.get("disk_path") or (vm_dir / f"{name}.{disk_format.value}")))
    iso = vm.get("iso")

    return VMConfiguration(
        name=name,
        path=vm_dir,
        memory_bytes=memory,
        processor_count=processors,
        disk_path=disk_path,
        disk_size_bytes=disk_size,
        disk_format=disk_format,
        iso_path=Path(str(iso)) if iso else None,
        network_mode=network,
        switch_name=vm.get("switch") or settings.hyperv_switch,
        tpm_enabled=bool(vm.get("tpm", False)),
        secure_boot_enabled=bool(vm.get("secure_boot", False)),
        dynamic_memory=bool(vm.get("dynamic_memory", False)),
        firmware=firmware,
        guest_os=str(vm.get("guest_os", "windows11-64")),
    )


def _default_disk_format(provider: str) -> str:
    return "vmdk" if provider.startswith("vmware") else "vhdx"

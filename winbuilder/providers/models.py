# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

from ..core.utils import U


class VMState(str, Enum):
    OFF = "Off"
    RUNNING = "Running"
    PAUSED = "Paused"
    SAVED = "Saved"
    # No signal was conclusive. Never read this as "off".
    UNKNOWN = "Unknown"


class StartOutcome(str, Enum):
    RUNNING = "Running"
    # Windowed start blocked until the guest shut itself down.
    COMPLETED = "Completed"


class HypervisorKind(str, Enum):
    HYPERV = "hyperv"
    VMWARE = "vmware"


class DiskFormat(str, Enum):
    VHDX = "vhdx"
    VHD = "vhd"
    VMDK = "vmdk"

    @classmethod
    def from_path(cls, p: Path) -> "DiskFormat":
        return cls(Path(p).suffix.lower().lstrip("."))


class NetworkMode(str, Enum):
    NAT = "nat"
    BRIDGED = "bridged"
    HOST_ONLY = "hostonly"
    SWITCH = "switch"  # named Hyper-V switch / custom VMware vmnet
    NONE = "none"


class Firmware(str, Enum):
    BIOS = "bios"  # Hyper-V generation 1
    UEFI = "uefi"  # Hyper-V generation 2

    @property
    def generation(self) -> int:
        return 2 if self is Firmware.UEFI else 1


@dataclass(frozen=True)
class VMConfiguration:
    """Desired state of a build VM. Never mutated after it is handed to create_vm."""
    name: str
    path: Path
    memory_bytes: int
    processor_count: int
    disk_path: Path
    disk_size_bytes: int
    disk_format: DiskFormat = DiskFormat.VHDX
    iso_path: Optional[Path] = None
    network_mode: NetworkMode = NetworkMode.NAT
    switch_name: Optional[str] = None
    tpm_enabled: bool = False
    secure_boot_enabled: bool = False
    dynamic_memory: bool = False
    firmware: Firmware = Firmware.UEFI
    guest_os: str = "windows11-64"

    @property
    def memory_mb(self) -> int:
        return self.memory_bytes // (1024 * 1024)

    def describe(self) -> str:
        return (
            f"{self.name}: {U.human_bytes(self.memory_bytes)} RAM, {self.processor_count} vCPU, "
            f"{self.disk_format.value} {U.human_bytes(self.disk_size_bytes)}, fw={self.firmware.value}, "
            f"tpm={self.tpm_enabled}, secureboot={self.secure_boot_enabled}"
        )


@dataclass(frozen=True)
class ProviderCapabilities:
    """Static per-backend facts used only by configuration validation."""
    supports_tpm: bool
    supports_secure_boot: bool
    supports_dynamic_memory: bool
    supports_snapshots: bool
    disk_formats: FrozenSet[DiskFormat]
    max_memory_bytes: int
    max_processors: int
    min_memory_bytes: int = 512 * 1024 * 1024


@dataclass
class VMInfo:
    """
    Observed handle to a created VM.

    `id` is the backend identity; for backends without registration it is
    simply the VM name and lookups scan for artifacts instead.
    """
    name: str
    id: str
    kind: HypervisorKind
    state: VMState = VMState.UNKNOWN
    config_path: Optional[Path] = None
    disk_path: Optional[Path] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "kind": self.kind.value,
            "state": self.state.value,
            "config_path": str(self.config_path) if self.config_path else None,
            "disk_path": str(self.disk_path) if self.disk_path else None,
        }


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class AvailabilityReport:
    is_available: bool
    issues: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

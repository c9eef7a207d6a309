# SPDX-License-Identifier: LGPL-3.0-or-later
# winbuilder/providers/__init__.py
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

__all__ = [
    "AvailabilityReport",
    "DiskFormat",
    "Firmware",
    "HypervisorKind",
    "NetworkMode",
    "ProviderCapabilities",
    "StartOutcome",
    "ValidationResult",
    "VMConfiguration",
    "VMInfo",
    "VMState",
]

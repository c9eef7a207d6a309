# SPDX-License-Identifier: LGPL-3.0-or-later
from dataclasses import replace
from pathlib import Path

import pytest

from winbuilder.providers.base import validate_against_capabilities
from winbuilder.providers.models import (
    DiskFormat,
    Firmware,
    NetworkMode,
    ProviderCapabilities,
    VMConfiguration,
)

GiB = 1024**3

CAPS = ProviderCapabilities(
    supports_tpm=True,
    supports_secure_boot=True,
    supports_dynamic_memory=False,
    supports_snapshots=True,
    disk_formats=frozenset({DiskFormat.VMDK}),
    max_memory_bytes=64 * GiB,
    max_processors=16,
)


def make_config(**kw) -> VMConfiguration:
    base = VMConfiguration(
        name="build01",
        path=Path("C:/VMs/build01"),
        memory_bytes=8 * GiB,
        processor_count=4,
        disk_path=Path("C:/VMs/build01/build01.vmdk"),
        disk_size_bytes=64 * GiB,
        disk_format=DiskFormat.VMDK,
        iso_path=Path("D:/iso/win.iso"),
    )
    return replace(base, **kw)


@pytest.mark.unit
class TestValidateAgainstCapabilities:

    def test_valid(self):
        res = validate_against_capabilities(make_config(), CAPS)

        assert res.is_valid
        assert res.warnings == []

    @pytest.mark.parametrize(
        "changes, fragment",
        [
            ({"name": "bad/name"}, "Invalid VM name"),
            ({"memory_bytes": 128 * 1024**2}, "below the minimum"),
            ({"memory_bytes": 128 * GiB}, "exceeds the maximum"),
            ({"processor_count": 0}, "at least 1"),
            ({"processor_count": 64}, "Processor count 64"),
            ({"disk_format": DiskFormat.VHDX, "disk_path": Path("C:/VMs/b/b.vhdx")}, "not supported"),
            ({"disk_path": Path("C:/VMs/b/b.vhdx")}, "does not match"),
            ({"disk_size_bytes": 512 * 1024**2}, "at least 1 GiB"),
            ({"iso_path": Path("D:/iso/win.img")}, "not an .iso"),
            ({"network_mode": NetworkMode.SWITCH}, "requires a switch name"),
            ({"secure_boot_enabled": True, "firmware": Firmware.BIOS}, "requires UEFI"),
        ],
    )
    def test_errors(self, changes, fragment):
        res = validate_against_capabilities(make_config(**changes), CAPS)

        assert not res.is_valid
        assert any(fragment in e for e in res.errors), res.errors

    def test_tpm_on_bios_is_only_a_warning(self):
        res = validate_against_capabilities(make_config(tpm_enabled=True, firmware=Firmware.BIOS), CAPS)

        assert res.is_valid
        assert any("TPM" in w for w in res.warnings)

    def test_dynamic_memory_unsupported_is_warning(self):
        res = validate_against_capabilities(make_config(dynamic_memory=True), CAPS)

        assert res.is_valid
        assert any("Dynamic memory" in w for w in res.warnings)

    def test_unsupported_secure_boot(self):
        caps = replace(CAPS, supports_secure_boot=False)

        res = validate_against_capabilities(make_config(secure_boot_enabled=True), caps)

        assert any("not supported" in e for e in res.errors)

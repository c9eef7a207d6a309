# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

from pathlib import Path
from unittest import mock

import pytest

from fakes.fake_psutil import FakeProc, vmx_process
from winbuilder.config.settings import BuilderSettings
from winbuilder.core.cleanup_registry import CleanupRegistry, ResourceType
from winbuilder.core.exceptions import (
    BackendUnavailable,
    ConfigurationInvalid,
    ExternalCommandFailed,
    StateIndeterminate,
    TransientFailure,
    VMNotFound,
)
from winbuilder.core.secrets import Secret
from winbuilder.providers.models import (
    DiskFormat,
    HypervisorKind,
    StartOutcome,
    VMConfiguration,
    VMInfo,
    VMState,
)
from winbuilder.providers.vmware.provider import VmwareWorkstationProvider
from winbuilder.providers.vmware.vmx import VmxFile

GiB = 1024**3


class StaticSecrets:
    def __init__(self, value):
        self.value = value
        self.purposes = []

    def get_secret(self, purpose):
        self.purposes.append(purpose)
        return Secret(self.value.encode("utf-8"), label=purpose)


@pytest.fixture
def install(tmp_path):
    d = tmp_path / "VMware Workstation"
    d.mkdir()
    (d / "vmrun.exe").write_bytes(b"")
    (d / "vmware-vdiskmanager.exe").write_bytes(b"")
    return d


@pytest.fixture
def running():
    return []


@pytest.fixture
def cleanup(fake_logger):
    return CleanupRegistry(fake_logger)


@pytest.fixture
def provider(tmp_path, install, fake_process, fake_logger, running, cleanup):
    return make_provider(tmp_path, install, fake_process, fake_logger, running, cleanup=cleanup)


def make_provider(tmp_path, install, fake_process, fake_logger, running, *, cleanup=None, secrets=None):
    settings = BuilderSettings(
        provider="vmware",
        vm_root=tmp_path / "vms",
        vmware_install_path=install,
        headless_start_timeout_s=1.0,
        stop_timeout_s=1.0,
        poll_interval_s=0.5,
        retry_delay_s=0,
    )
    return VmwareWorkstationProvider(
        fake_logger,
        settings=settings,
        process=fake_process,
        cleanup=cleanup,
        secrets=secrets,
        process_iter=lambda: list(running),
        sleep=lambda s: None,
    )


def make_config(tmp_path, name="b1", **kw):
    vm_dir = tmp_path / "vms" / name
    iso = tmp_path / "win.iso"
    iso.write_bytes(b"")
    values = dict(
        name=name,
        path=vm_dir,
        memory_bytes=4 * GiB,
        processor_count=2,
        disk_path=vm_dir / f"{name}.vmdk",
        disk_size_bytes=40 * GiB,
        disk_format=DiskFormat.VMDK,
        iso_path=iso,
    )
    values.update(kw)
    return VMConfiguration(**values)


def write_vm(tmp_path, name="b1", extra=None):
    vmx = tmp_path / "vms" / name / f"{name}.vmx"
    values = {"displayName": name, "nvme0:0.fileName": f"{name}.vmdk"}
    values.update(extra or {})
    VmxFile(vmx).write(values)
    return VMInfo(
        name=name,
        id=name,
        kind=HypervisorKind.VMWARE,
        config_path=vmx,
        disk_path=vmx.parent / f"{name}.vmdk",
    )


@pytest.mark.unit
class TestAvailability:

    def test_available(self, provider, install):
        report = provider.get_availability_details()

        assert report.is_available
        assert report.details["install_path"] == str(install)
        assert report.details["vmcli"] is False

    def test_missing_install(self, tmp_path, fake_process, fake_logger):
        p = make_provider(tmp_path, tmp_path / "nowhere", fake_process, fake_logger, [])

        report = p.get_availability_details()

        assert not report.is_available
        assert "installation not found" in report.issues[0]

    def test_vmcli_is_probed_once(self, tmp_path, install, fake_process, fake_logger):
        (install / "vmcli.exe").write_bytes(b"")

        p = make_provider(tmp_path, install, fake_process, fake_logger, [])

        assert p.vmcli_path == install / "vmcli.exe"
        assert p.vdisk.vmcli == install / "vmcli.exe"


@pytest.mark.unit
class TestCreate:

    def test_creates_vmx_and_disk(self, provider, tmp_path, fake_process, cleanup):
        config = make_config(tmp_path)

        info = provider.create_vm(config)

        values = VmxFile(info.config_path).read()
        assert values["displayName"] == "b1"
        assert values["memsize"] == "4096"
        assert values["bios.bootOrder"] == "hdd,cdrom"
        assert values["nvme0:0.fileName"] == "b1.vmdk"
        assert values["sata0:1.fileName"] == str(config.iso_path)
        assert values["ethernet0.connectionType"] == "nat"
        assert info.state is VMState.OFF
        assert len(fake_process.commands("vmware-vdiskmanager")) == 1
        assert [e.resource_type for e in cleanup.pending()] == [ResourceType.VM]

    def test_invalid_configuration_makes_no_calls(self, provider, tmp_path, fake_process):
        config = make_config(tmp_path, name="bad/name", processor_count=99)

        with pytest.raises(ConfigurationInvalid) as ei:
            provider.create_vm(config)

        assert len(ei.value.errors) == 2
        assert fake_process.calls == []
        assert not (tmp_path / "vms").exists()

    def test_backend_unavailable(self, tmp_path, fake_process, fake_logger):
        p = make_provider(tmp_path, tmp_path / "nowhere", fake_process, fake_logger, [])

        with pytest.raises(BackendUnavailable):
            p.create_vm(make_config(tmp_path))
        assert fake_process.calls == []

    def test_duplicate_name(self, provider, tmp_path):
        provider.create_vm(make_config(tmp_path))

        with pytest.raises(ConfigurationInvalid, match="already exists"):
            provider.create_vm(make_config(tmp_path))

    def test_rollback_after_vmx_write_failure(self, provider, tmp_path, cleanup, fake_logger):
        config = make_config(tmp_path)

        with mock.patch.object(VmxFile, "write", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                provider.create_vm(config)

        assert not config.path.exists()
        assert provider.get_vm("b1") is None
        assert len(cleanup) == 0
        assert any("Rolled back VM directory" in m for m in fake_logger.messages("info"))

    def test_tpm_enabled(self, provider, tmp_path):
        info = provider.create_vm(make_config(tmp_path, tpm_enabled=True, secure_boot_enabled=True))

        values = VmxFile(info.config_path).read()
        assert values["managedvm.autoAddVTPM"] == "software"
        assert values["uefi.secureBoot.enabled"] == "TRUE"
        assert info.extra["tpm"] is True

    def test_tpm_failure_is_not_fatal(self, provider, tmp_path, fake_logger):
        with mock.patch.object(
            VmwareWorkstationProvider, "_enable_tpm", side_effect=TransientFailure(msg="vTPM not persisted")
        ):
            info = provider.create_vm(make_config(tmp_path, tpm_enabled=True))

        assert info.extra["tpm"] is False
        assert info.config_path.exists()
        assert any("Continuing without TPM" in w for w in fake_logger.messages("warning"))

    def test_unc_iso_is_staged(self, provider, tmp_path, fake_process, cleanup):
        config = make_config(tmp_path, iso_path=Path("//fileserver/iso/win.iso"))

        info = provider.create_vm(config)

        (copy,) = fake_process.commands("robocopy")
        assert copy[-1] == "win.iso"
        assert copy[2] == str(config.path)
        values = VmxFile(info.config_path).read()
        assert values["sata0:1.fileName"] == str(config.path / "win.iso")
        assert ResourceType.TEMP_FILE in {e.resource_type for e in cleanup.pending()}


@pytest.mark.unit
class TestStart:

    def test_headless_running(self, provider, tmp_path, fake_process, running):
        vm = write_vm(tmp_path)
        fake_process.on(" nogui", effect=lambda argv: running.append(vmx_process(vm.config_path)))

        assert provider.start_vm(vm) is StartOutcome.RUNNING
        assert vm.state is VMState.RUNNING
        assert fake_process.commands(" gui") == []

    def test_headless_without_process_fails(self, provider, tmp_path):
        vm = write_vm(tmp_path)

        with pytest.raises(ExternalCommandFailed, match="no VM process appeared"):
            provider.start_vm(vm)

    def test_headless_failure_does_not_fall_back(self, provider, tmp_path, fake_process):
        vm = write_vm(tmp_path)
        fake_process.on(" nogui", exit_code=255, stdout="Error: Cannot open VM")

        with pytest.raises(ExternalCommandFailed, match="Headless start"):
            provider.start_vm(vm)
        assert len(fake_process.calls) == 1

    def test_canceled_falls_back_to_windowed(self, provider, tmp_path, fake_process, fake_logger):
        vm = write_vm(tmp_path)
        fake_process.on(" nogui", exit_code=255, stdout="Error: The operation was canceled")

        outcome = provider.start_vm(vm)

        assert outcome is StartOutcome.COMPLETED
        assert [c[-1] for c in fake_process.calls] == ["nogui", "gui"]
        assert any("canceled" in w for w in fake_logger.messages("warning"))

    def test_windowed_run_to_completion(self, provider, tmp_path, fake_process):
        vm = write_vm(tmp_path)

        outcome = provider.start_vm(vm, show_console=True)

        assert outcome is StartOutcome.COMPLETED
        assert vm.state is VMState.OFF

    def test_windowed_failure_raises(self, provider, tmp_path, fake_process):
        vm = write_vm(tmp_path)
        fake_process.on(" gui", exit_code=1, stdout="Error: something")

        with pytest.raises(ExternalCommandFailed, match="Windowed start"):
            provider.start_vm(vm, show_console=True)

    def test_encrypted_vm_password(self, tmp_path, install, fake_process, fake_logger, running):
        secrets = StaticSecrets("s3cret")
        p = make_provider(tmp_path, install, fake_process, fake_logger, running, secrets=secrets)
        vm = write_vm(tmp_path, extra={"encryption.keySafe": "vmware:key/list/(pair/(phrase/abc))"})
        fake_process.on(" nogui", effect=lambda argv: running.append(vmx_process(vm.config_path)))

        p.start_vm(vm)

        (argv,) = fake_process.calls
        assert argv[3:5] == ("-vp", "s3cret")
        assert fake_process.secrets == ["s3cret"]
        assert secrets.purposes == ["vm-encryption:b1"]

    def test_encrypted_vm_without_secret_source(self, provider, tmp_path, fake_process):
        vm = write_vm(tmp_path, extra={"encryption.keySafe": "vmware:key"})

        with pytest.raises(ConfigurationInvalid, match="encrypted"):
            provider.start_vm(vm)
        assert fake_process.calls == []


@pytest.mark.unit
class TestStopAndState:

    def test_stop_settles_to_off(self, provider, tmp_path, fake_process, running):
        vm = write_vm(tmp_path)
        running.append(vmx_process(vm.config_path))
        fake_process.on(" stop ", effect=lambda argv: running.clear())

        provider.stop_vm(vm)

        assert vm.state is VMState.OFF
        assert fake_process.commands(" stop ")[0][-1] == "soft"

    def test_stop_when_off_is_noop(self, provider, tmp_path, fake_process):
        vm = write_vm(tmp_path)

        provider.stop_vm(vm, force=True)

        assert fake_process.commands(" stop ") == []

    def test_hard_stop_unknown_raises(self, provider, tmp_path, fake_process, running):
        vm = write_vm(tmp_path)
        running.append(FakeProc(77, "vmware-vmx.exe", None, denied=True))
        fake_process.on(" list", exit_code=255, stdout="Error: Unable to connect")

        with pytest.raises(StateIndeterminate):
            provider.stop_vm(vm, force=True)
        assert fake_process.commands(" stop ")[0][-1] == "hard"

    def test_graceful_stop_timeout_only_warns(self, provider, tmp_path, fake_process, running, fake_logger):
        vm = write_vm(tmp_path)
        running.append(vmx_process(vm.config_path))

        provider.stop_vm(vm)

        assert vm.state is VMState.RUNNING
        assert any("graceful shutdown" in w for w in fake_logger.messages("warning"))

    def test_state_of_missing_vm(self, provider, tmp_path):
        vm = VMInfo(name="ghost", id="ghost", kind=HypervisorKind.VMWARE, config_path=tmp_path / "ghost.vmx")

        with pytest.raises(VMNotFound):
            provider.get_vm_state(vm)

    def test_get_vm_by_display_name(self, provider, tmp_path):
        vmx = tmp_path / "vms" / "renamed" / "old.vmx"
        VmxFile(vmx).write({"displayName": "b2", "sata0:0.fileName": "D:\\disks\\b2.vmdk"})

        info = provider.get_vm("b2")

        assert info.config_path == vmx
        assert info.disk_path == Path("D:\\disks\\b2.vmdk")
        assert info.state is VMState.OFF

    def test_ip_address(self, provider, tmp_path, fake_process):
        vm = write_vm(tmp_path)
        fake_process.on("getGuestIPAddress", stdout="10.1.2.3\n")

        assert provider.get_vm_ip_address(vm) == "10.1.2.3"


@pytest.mark.unit
class TestBootMedia:

    def test_attach_clears_boot_cache(self, provider, tmp_path):
        vm = write_vm(tmp_path)
        nvram = vm.config_path.with_suffix(".nvram")
        nvram.write_bytes(b"\0")
        iso = tmp_path / "win.iso"

        provider.attach_iso(vm, iso)

        assert not nvram.exists()
        values = VmxFile(vm.config_path).read()
        assert values["bios.bootOrder"] == "cdrom,hdd"
        assert values["sata0:1.fileName"] == str(iso)
        assert vm.extra["iso"] == str(iso)

    def test_detach(self, provider, tmp_path):
        vm = write_vm(tmp_path, extra={"sata0:1.fileName": "D:\\iso\\win.iso", "bios.bootOrder": "cdrom,hdd"})

        provider.detach_iso(vm)

        values = VmxFile(vm.config_path).read()
        assert "sata0:1.fileName" not in values
        assert values["bios.bootOrder"] == "hdd"
        assert values["sata0:1.startConnected"] == "FALSE"

    def test_attach_while_running_warns(self, provider, tmp_path, running, fake_logger):
        vm = write_vm(tmp_path)
        running.append(vmx_process(vm.config_path))

        provider.attach_iso(vm, tmp_path / "win.iso")

        assert any("apply after restart" in w for w in fake_logger.messages("warning"))


@pytest.mark.unit
class TestRemove:

    def test_keep_disks(self, provider, tmp_path, fake_process):
        vm = write_vm(tmp_path)
        vm.disk_path.write_bytes(b"disk")
        vm.config_path.with_suffix(".nvram").write_bytes(b"\0")

        provider.remove_vm(vm)

        assert vm.disk_path.exists()
        assert not vm.config_path.exists()
        assert not vm.config_path.with_suffix(".nvram").exists()
        assert fake_process.commands("deleteVM") == []

    def test_remove_disks(self, provider, tmp_path, fake_process):
        vm = write_vm(tmp_path)
        vm.disk_path.write_bytes(b"disk")

        provider.remove_vm(vm, remove_disks=True)

        assert not vm.config_path.parent.exists()
        assert len(fake_process.commands("deleteVM")) == 1

    def test_remove_running_vm_stops_first(self, provider, tmp_path, fake_process, running):
        vm = write_vm(tmp_path)
        running.append(vmx_process(vm.config_path))
        fake_process.on(" stop ", effect=lambda argv: running.clear())

        provider.remove_vm(vm)

        assert fake_process.commands(" stop ")[0][-1] == "hard"
        assert vm.state is VMState.OFF

    def test_missing_vm_is_noop(self, provider, tmp_path, fake_process):
        vm = VMInfo(name="ghost", id="ghost", kind=HypervisorKind.VMWARE, config_path=tmp_path / "ghost.vmx")

        provider.remove_vm(vm)

        assert fake_process.calls == []

    def test_created_vm_leaves_cleanup_registry(self, provider, tmp_path, cleanup):
        info = provider.create_vm(make_config(tmp_path))

        provider.remove_vm(info, remove_disks=True)

        assert len(cleanup) == 0

    def test_failed_vm_cleanup_stays_registered(self, provider, tmp_path, cleanup):
        provider.create_vm(make_config(tmp_path))

        with mock.patch("winbuilder.providers.vmware.provider.shutil.rmtree", side_effect=OSError("in use")):
            summary = cleanup.invoke_all("build failed")

        assert summary.failed == 1
        assert [e.resource_type for e in cleanup.pending()] == [ResourceType.VM]

        summary = cleanup.invoke_all("build failed")

        assert summary.clean
        assert len(cleanup) == 0
        assert not (tmp_path / "vms" / "b1").exists()

    def test_encrypted_vm_in_unknown_state_is_stopped_with_password(
        self, tmp_path, install, fake_process, fake_logger, running
    ):
        secrets = StaticSecrets("hunter2")
        p = make_provider(tmp_path, install, fake_process, fake_logger, running, secrets=secrets)
        vm = write_vm(tmp_path, extra={"encryption.keySafe": "vmware:key"})
        fake_process.on(" list", exit_code=255, stdout="Error: version mismatch")

        p.remove_vm(vm)

        stops = fake_process.commands(" stop ")
        assert stops
        assert all("-vp" in c for c in stops)
        assert "hunter2" in fake_process.secrets


@pytest.mark.unit
class TestDisks:

    def test_new_vmdk_registers_cleanup(self, provider, tmp_path, fake_process, cleanup):
        path = provider.new_virtual_disk(tmp_path / "data" / "d.vmdk", 8 * GiB)

        assert path.parent.is_dir()
        assert len(fake_process.commands("vmware-vdiskmanager")) == 1
        assert [e.resource_type for e in cleanup.pending()] == [ResourceType.DISK]

    def test_existing_disk_is_rejected(self, provider, tmp_path):
        p = tmp_path / "d.vmdk"
        p.write_bytes(b"")

        with pytest.raises(ConfigurationInvalid, match="already exists"):
            provider.new_virtual_disk(p, GiB)

    def test_vmdk_cannot_be_mounted(self, provider, tmp_path, fake_process):
        with pytest.raises(ConfigurationInvalid):
            provider.mount_virtual_disk(tmp_path / "d.vmdk")
        assert fake_process.calls == []

    def test_mount_and_dismount_vhdx(self, provider, tmp_path, fake_process, cleanup):
        provider.diskpart.allocator._in_use = set
        provider.diskpart.allocator._visible = lambda letter: True
        image = tmp_path / "data.vhdx"

        letter = provider.mount_virtual_disk(image)

        assert letter == "W"
        assert [e.resource_type for e in cleanup.pending()] == [ResourceType.IMAGE_MOUNT]

        provider.dismount_virtual_disk(image)

        assert len(cleanup) == 0
        assert len(fake_process.commands("diskpart")) == 3

# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import io
import unittest
from unittest import mock

import pytest
from rich.console import Console

from fakes.fake_logger import FakeLogger
from winbuilder.__main__ import main
from winbuilder.cli.commands import COMMANDS, CommandContext
from winbuilder.cli.parser import build_parser
from winbuilder.core.exceptions import VMNotFound
from winbuilder.providers.models import AvailabilityReport, HypervisorKind, VMInfo, VMState

VALID_YAML = """\
provider: hyperv
vm:
  name: win11-build
  memory: 8GiB
  processors: 4
  disk_size: 80GiB
"""


class StubProvider:
    kind = HypervisorKind.HYPERV

    def __init__(self, report=None, vm=None):
        self.report = report or AvailabilityReport(True, details={"service": "Running"})
        self.vm = vm
        self.stopped = []
        self.removed = []

    def get_availability_details(self):
        return self.report

    def get_vm(self, name):
        return self.vm

    def require_vm(self, name):
        if self.vm is None:
            raise VMNotFound(msg=f"VM not found: {name}")
        return self.vm

    def get_vm_ip_address(self, vm):
        return "10.0.0.5"

    def stop_vm(self, vm, force=False):
        self.stopped.append(force)
        vm.state = VMState.OFF

    def remove_vm(self, vm, remove_disks=False):
        self.removed.append(remove_disks)


def run(argv, providers):
    args = build_parser().parse_args(argv)
    console = Console(file=io.StringIO(), width=200, no_color=True)
    requested = []

    def factory(name, logger, **kw):
        requested.append(name)
        return providers[name]

    ctx = CommandContext(args, FakeLogger(), console=console, provider_factory=factory)
    rc = COMMANDS[args.command](ctx)
    return rc, console.file.getvalue(), requested


def running_vm():
    return VMInfo(name="b1", id="b1", kind=HypervisorKind.HYPERV, state=VMState.RUNNING)


@pytest.mark.unit
class TestParser(unittest.TestCase):

    def test_globals_before_command(self):
        args = build_parser().parse_args(["-vv", "--provider", "vmware", "state", "b1", "--ip"])

        self.assertEqual(args.verbose, 2)
        self.assertEqual(args.provider, "vmware")
        self.assertEqual(args.command, "state")
        self.assertTrue(args.ip)

    def test_command_required(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args([])

    def test_unknown_provider_rejected(self):
        with self.assertRaises(SystemExit):
            build_parser().parse_args(["--provider", "virtualbox", "probe"])


@pytest.mark.unit
class TestCommands:

    def test_probe_all(self):
        providers = {
            "hyperv": StubProvider(),
            "vmware": StubProvider(AvailabilityReport(False, issues=["vmrun not found"])),
        }

        rc, out, requested = run(["probe", "--all"], providers)

        assert rc == 3
        assert requested == ["hyperv", "vmware"]
        assert "vmrun not found" in out
        assert "service=Running" in out

    def test_probe_default_provider(self):
        rc, _, requested = run(["probe"], {"hyperv": StubProvider()})

        assert rc == 0
        assert requested == ["hyperv"]

    def test_state_with_ip(self):
        rc, out, _ = run(["--provider", "hyperv", "state", "b1", "--ip"], {"hyperv": StubProvider(vm=running_vm())})

        assert rc == 0
        assert "b1: Running ip=10.0.0.5" in out

    def test_state_missing_vm(self):
        with pytest.raises(VMNotFound):
            run(["state", "ghost"], {"hyperv": StubProvider()})

    def test_stop_force(self):
        provider = StubProvider(vm=running_vm())

        rc, out, _ = run(["stop", "b1", "--force"], {"hyperv": provider})

        assert rc == 0
        assert provider.stopped == [True]
        assert "b1: Off" in out

    def test_remove_missing_is_ok(self):
        provider = StubProvider()

        rc, _, _ = run(["remove", "ghost"], {"hyperv": provider})

        assert rc == 0
        assert provider.removed == []

    def test_remove_with_disks(self):
        provider = StubProvider(vm=running_vm())

        rc, out, _ = run(["remove", "b1", "--remove-disks"], {"hyperv": provider})

        assert rc == 0
        assert provider.removed == [True]
        assert "Removed b1" in out

    def test_validate(self, tmp_path, fake_logger):
        cfg = tmp_path / "build.yaml"
        cfg.write_text(VALID_YAML, encoding="utf-8")
        args = build_parser().parse_args(["-c", str(cfg), "validate"])
        console = Console(file=io.StringIO(), width=200, no_color=True)

        rc = COMMANDS["validate"](CommandContext(args, fake_logger, console=console))

        assert rc == 0
        assert "win11-build" in console.file.getvalue()

    def test_validate_errors(self, tmp_path, fake_logger):
        cfg = tmp_path / "build.yaml"
        cfg.write_text(VALID_YAML.replace("processors: 4", "processors: 999"), encoding="utf-8")
        args = build_parser().parse_args(["-c", str(cfg), "validate"])
        console = Console(file=io.StringIO(), width=200, no_color=True)

        rc = COMMANDS["validate"](CommandContext(args, fake_logger, console=console))

        assert rc == 2
        assert "Processor count 999" in console.file.getvalue()


@pytest.mark.unit
class TestMain:

    def test_missing_vm_block_exit_code(self, tmp_path):
        cfg = tmp_path / "build.yaml"
        cfg.write_text("provider: hyperv\n", encoding="utf-8")

        assert main(["-q", "--no-color", "-c", str(cfg), "validate"]) == 2

    def test_missing_config_file(self, tmp_path):
        assert main(["-q", "--no-color", "-c", str(tmp_path / "nope.yaml"), "probe"]) == 2

    def test_host_io_error_exits_fatal(self, tmp_path):
        def boom(ctx):
            raise PermissionError(13, "Access is denied", str(tmp_path / "b1.vmx"))

        with mock.patch.dict(COMMANDS, {"validate": boom}):
            assert main(["-q", "--no-color", "validate"]) == 1

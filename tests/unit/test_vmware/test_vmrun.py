# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

from pathlib import Path

import pytest

from winbuilder.core.exceptions import ExternalCommandFailed
from winbuilder.providers.vmware.vmrun import VmrunClient, is_canceled, parse_ip, parse_list_output

VMRUN = Path("C:/VMware/vmrun.exe")
VMX = Path("D:/VMs/b1/b1.vmx")


@pytest.mark.unit
class TestVmrunParsing:

    def test_list_output(self):
        out = "Total running VMs: 2\nD:\\VMs\\b1\\b1.vmx\n\nD:\\VMs\\b2\\b2.vmx\n"

        assert parse_list_output(out) == ["D:\\VMs\\b1\\b1.vmx", "D:\\VMs\\b2\\b2.vmx"]

    def test_list_output_empty(self):
        assert parse_list_output("Total running VMs: 0\n") == []

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("192.168.10.5\n", "192.168.10.5"),
            ("169.254.3.3 10.0.0.7", "10.0.0.7"),
            ("127.0.0.1", None),
            ("Error: The VMware Tools are not running", None),
            ("fe80::1 2001:db8::5", "2001:db8::5"),
        ],
    )
    def test_parse_ip(self, text, expected):
        assert parse_ip(text) == expected

    def test_is_canceled(self):
        assert is_canceled(["", "Error: The operation was canceled"])
        assert not is_canceled(["Error: Unknown error", None])


@pytest.mark.unit
class TestVmrunClient:

    def test_start_headless_argv(self, fake_process):
        client = VmrunClient(fake_process, VMRUN, timeout_s=30)

        res = client.start(VMX, gui=False)

        assert res.ok
        assert fake_process.calls == [(str(VMRUN), "-T", "ws", "start", str(VMX), "nogui")]

    def test_start_does_not_raise_on_failure(self, fake_process):
        fake_process.on("start", exit_code=255, stdout="Error: The operation was canceled")
        client = VmrunClient(fake_process, VMRUN)

        res = client.start(VMX, gui=True)

        assert not res.ok
        assert fake_process.calls[0][-1] == "gui"

    def test_password_is_passed_as_secret(self, fake_process):
        client = VmrunClient(fake_process, VMRUN)

        client.stop(VMX, hard=True, password="hunter2")

        assert fake_process.calls == [(str(VMRUN), "-T", "ws", "-vp", "hunter2", "stop", str(VMX), "hard")]
        assert fake_process.secrets == ["hunter2"]

    def test_list_running_failure_raises(self, fake_process):
        fake_process.on(" list", exit_code=255, stdout="Error: Unable to connect to host")
        client = VmrunClient(fake_process, VMRUN)

        with pytest.raises(ExternalCommandFailed):
            client.list_running()

    def test_guest_ip_failure_is_none(self, fake_process):
        fake_process.on("getGuestIPAddress", exit_code=255, stdout="Error: VMware Tools are not running")
        client = VmrunClient(fake_process, VMRUN)

        assert client.guest_ip(VMX) is None

# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/cli/parser.py
from __future__ import annotations

import argparse
from pathlib import Path

from ..core.logger import c
from ..providers.factory import provider_names

EPILOG = """\
examples:
  winbuilder probe --all
  winbuilder -c build.yaml validate
  winbuilder --provider vmware state win11-build --ip
  winbuilder stop win11-build --force
  winbuilder remove win11-build --remove-disks
"""


def _add_global_flags(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("global")
    g.add_argument("-c", "--config", type=Path, help="YAML settings file (may also contain a vm: block)")
    g.add_argument("--provider", choices=provider_names(), help="Override the provider from the config")
    g.add_argument("-v", "--verbose", action="count", default=0, help="More output (-vv debug, -vvv trace)")
    g.add_argument("-q", "--quiet", action="count", default=0, help="Less output (-qq errors only)")
    g.add_argument("--log-file", help="Also write logs to this file")
    g.add_argument("--json-logs", action="store_true", help="Emit NDJSON log records")
    g.add_argument("--no-color", action="store_true", help="Disable colored output")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="winbuilder",
        description=c("winbuilder: build-VM backend diagnostics (Hyper-V / VMware Workstation)", "green", ["bold"]),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    _add_global_flags(p)

    sub = p.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    probe = sub.add_parser("probe", help="Check whether the virtualization backend is usable")
    probe.add_argument("--all", action="store_true", help="Probe every known backend")

    sub.add_parser("validate", help="Validate the vm: block of the config against the provider")

    state = sub.add_parser("state", help="Show the power state of a VM")
    state.add_argument("name")
    state.add_argument("--ip", action="store_true", help="Also query the guest IP address")

    stop = sub.add_parser("stop", help="Stop a VM")
    stop.add_argument("name")
    stop.add_argument("--force", action="store_true", help="Power off immediately")

    remove = sub.add_parser("remove", help="Delete a VM")
    remove.add_argument("name")
    remove.add_argument("--remove-disks", action="store_true", help="Delete its virtual disks and directory too")

    return p

# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/cli/commands.py
from __future__ import annotations

import argparse
import logging
from typing import Callable, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from ..config.settings import BuilderSettings, load_yaml, settings_from_mapping, vm_configuration_from_mapping
from ..core.cleanup_registry import CleanupRegistry
from ..core.exceptions import ConfigurationInvalid
from ..core.secrets import EnvSecretSource
from ..providers.base import VirtualizationProvider
from ..providers.factory import create_provider

# Canonical names only; aliases would probe the same backend twice.
ALL_PROVIDERS = ("hyperv", "vmware")


class CommandContext:
    def __init__(
        self,
        args: argparse.Namespace,
        logger: logging.Logger,
        *,
        console: Optional[Console] = None,
        provider_factory: Callable[..., VirtualizationProvider] = create_provider,
    ):
        self.args = args
        self.logger = logger
        self.console = console or Console(no_color=bool(getattr(args, "no_color", False)))
        self.raw: Dict = load_yaml(args.config) if args.config else {}
        self.settings: BuilderSettings = settings_from_mapping(self.raw, logger)
        self.cleanup = CleanupRegistry(logger)
        self._factory = provider_factory

    def provider(self, name: Optional[str] = None) -> VirtualizationProvider:
        return self._factory(
            name or self.args.provider or self.settings.provider,
            self.logger,
            settings=self.settings,
            cleanup=self.cleanup,
            secrets=EnvSecretSource(),
        )


def cmd_probe(ctx: CommandContext) -> int:
    names: List[str] = list(ALL_PROVIDERS) if ctx.args.all else [ctx.args.provider or ctx.settings.provider]
    table = Table(title="Backend availability")
    table.add_column("Provider", style="bold")
    table.add_column("Available")
    table.add_column("Issues")
    table.add_column("Details", overflow="fold")

    rc = 0
    for name in names:
        report = ctx.provider(name).get_availability_details()
        if not report.is_available:
            rc = 3
        table.add_row(
            name,
            "[green]yes[/green]" if report.is_available else "[red]no[/red]",
            "\n".join(report.issues) or "-",
            "\n".join(f"{k}={v}" for k, v in sorted(report.details.items())),
        )
    ctx.console.print(table)
    return rc


def cmd_validate(ctx: CommandContext) -> int:
    vm_block = ctx.raw.get("vm")
    if not isinstance(vm_block, dict):
        raise ConfigurationInvalid(msg="Config has no vm: block to validate", errors=["missing vm block"])
    config = vm_configuration_from_mapping(vm_block, ctx.settings)
    provider = ctx.provider()
    res = provider.validate_configuration(config)

    table = Table(title=f"{config.name} on {provider.kind.value}")
    table.add_column("Level")
    table.add_column("Message", overflow="fold")
    for e in res.errors:
        table.add_row("[red]error[/red]", e)
    for w in res.warnings:
        table.add_row("[yellow]warning[/yellow]", w)
    if not res.errors and not res.warnings:
        table.add_row("[green]ok[/green]", config.describe())
    ctx.console.print(table)
    return 0 if res.is_valid else 2


def cmd_state(ctx: CommandContext) -> int:
    provider = ctx.provider()
    vm = provider.require_vm(ctx.args.name)
    line = f"{vm.name}: {vm.state.value}"
    if ctx.args.ip:
        line += f" ip={provider.get_vm_ip_address(vm) or '-'}"
    ctx.console.print(line)
    return 0


def cmd_stop(ctx: CommandContext) -> int:
    provider = ctx.provider()
    vm = provider.require_vm(ctx.args.name)
    provider.stop_vm(vm, force=ctx.args.force)
    ctx.console.print(f"{vm.name}: {vm.state.value}")
    return 0


def cmd_remove(ctx: CommandContext) -> int:
    provider = ctx.provider()
    vm = provider.get_vm(ctx.args.name)
    if vm is None:
        ctx.logger.info("VM %s does not exist; nothing to remove", ctx.args.name)
        return 0
    provider.remove_vm(vm, remove_disks=ctx.args.remove_disks)
    ctx.console.print(f"Removed {vm.name}")
    return 0


COMMANDS: Dict[str, Callable[[CommandContext], int]] = {
    "probe": cmd_probe,
    "validate": cmd_validate,
    "state": cmd_state,
    "stop": cmd_stop,
    "remove": cmd_remove,
}

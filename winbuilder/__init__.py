# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/__init__.py
"""
winbuilder - build-VM lifecycle for Windows image builds

One lifecycle interface over Hyper-V and VMware Workstation, with LIFO
failure cleanup and retry helpers for the host operations around it.

    from winbuilder import CleanupRegistry, create_provider, load_settings

    settings = load_settings(Path("build.yaml"))
    cleanup = CleanupRegistry(logger)
    provider = create_provider(logger=logger, settings=settings, cleanup=cleanup)

    with cleanup.scope("build failed"):
        vm = provider.create_vm(config)
        provider.start_vm(vm)
"""

__version__ = "0.1.0"

from .config.settings import BuilderSettings, load_settings, vm_configuration_from_mapping
from .core.cleanup_registry import CleanupRegistry, ResourceType
from .core.retry import RetryExecutor
from .providers.base import VirtualizationProvider
from .providers.factory import create_provider
from .providers.models import StartOutcome, VMConfiguration, VMInfo, VMState

__all__ = [
    "__version__",
    "BuilderSettings",
    "CleanupRegistry",
    "ResourceType",
    "RetryExecutor",
    "StartOutcome",
    "VMConfiguration",
    "VMInfo",
    "VMState",
    "VirtualizationProvider",
    "create_provider",
    "load_settings",
    "vm_configuration_from_mapping",
]

# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/factory.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type

from ..config.settings import BuilderSettings
from ..core.cleanup_registry import CleanupRegistry
from ..core.exceptions import ConfigurationInvalid
from ..core.process import ProcessControl
from ..core.secrets import SecretSource
from .base import VirtualizationProvider
from .hyperv.provider import HyperVProvider
from .vmware.provider import VmwareWorkstationProvider

_PROVIDERS: Dict[str, Type[VirtualizationProvider]] = {
    "hyperv": HyperVProvider,
    "hyper-v": HyperVProvider,
    "vmware": VmwareWorkstationProvider,
    "vmware-workstation": VmwareWorkstationProvider,
}


def provider_names() -> List[str]:
    return sorted(_PROVIDERS)


def create_provider(
    name: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
    *,
    settings: Optional[BuilderSettings] = None,
    process: Optional[ProcessControl] = None,
    cleanup: Optional[CleanupRegistry] = None,
    secrets: Optional[SecretSource] = None,
    **kwargs: Any,
) -> VirtualizationProvider:
    """
    Build the provider named by `name` (default: settings.provider).

    Construction is cheap and passive: tool discovery only, no VM calls.
    """
    settings = settings or BuilderSettings()
    key = (name or settings.provider or "").strip().lower()
    cls = _PROVIDERS.get(key)
    if cls is None:
        raise ConfigurationInvalid(
            msg=f"Unknown provider {key!r} (expected one of: {', '.join(provider_names())})",
            errors=[f"provider: {key!r}"],
        )
    if cls is VmwareWorkstationProvider:
        kwargs["secrets"] = secrets
    return cls(logger, settings=settings, process=process, cleanup=cleanup, **kwargs)

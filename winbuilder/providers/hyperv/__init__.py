# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/hyperv/__init__.py
"""Microsoft Hyper-V backend (PowerShell Hyper-V module)."""

from .provider import HyperVProvider

__all__ = ["HyperVProvider"]

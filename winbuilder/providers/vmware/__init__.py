# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/vmware/__init__.py
"""VMware Workstation backend (vmrun, .vmx files, diskpart)."""

from .provider import VmwareWorkstationProvider

__all__ = ["VmwareWorkstationProvider"]

# SPDX-License-Identifier: LGPL-3.0-or-later
from .settings import BuilderSettings, load_settings, vm_configuration_from_mapping

__all__ = ["BuilderSettings", "load_settings", "vm_configuration_from_mapping"]

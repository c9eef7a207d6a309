# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/providers/vmware/vmx.py
"""
VMX configuration file codec.

A .vmx file is a list of `key = "value"` lines. Updates always go through
the whole file: parse, overlay the changed keys, write every key back in
sorted order and fsync, because the vmware-vmx process may read the file
again right after we return. Verification re-parses from disk instead of
trusting what we meant to write.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from ...core.logging_utils import safe_logger
from ...core.utils import U

_LINE_RE = re.compile(r'^\s*([^=#\s][^=]*?)\s*=\s*"?(.*?)"?\s*$')

# VMX escapes a few characters as |XX hex sequences.
_ESCAPES = (("|", "|7C"), ('"', "|22"))


def _escape(value: str) -> str:
    for raw, esc in _ESCAPES:
        value = value.replace(raw, esc)
    return value


def _unescape(value: str) -> str:
    for raw, esc in reversed(_ESCAPES):
        value = value.replace(esc, raw).replace(esc.lower(), raw)
    return value


def vmx_bool(flag: bool) -> str:
    return "TRUE" if flag else "FALSE"


def parse_vmx(text: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        m = _LINE_RE.match(line)
        if not m:
            continue
        values[m.group(1).strip()] = _unescape(m.group(2))
    return values


def serialize_vmx(values: Mapping[str, str]) -> str:
    return "".join(f'{k} = "{_escape(str(values[k]))}"\n' for k in sorted(values))


def _find_key(values: Mapping[str, str], key: str) -> Optional[str]:
    # VMX keys are case-insensitive.
    kl = key.lower()
    for k in values:
        if k.lower() == kl:
            return k
    return None


def get_value(values: Mapping[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    k = _find_key(values, key)
    return values[k] if k is not None else default


class VmxFile:
    def __init__(self, path: Path, logger: Optional[logging.Logger] = None):
        self.path = Path(path)
        self.logger = safe_logger(logger)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> Dict[str, str]:
        return parse_vmx(self.path.read_text(encoding="utf-8", errors="replace"))

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return get_value(self.read(), key, default)

    def write(self, values: Mapping[str, str]) -> None:
        U.ensure_dir(self.path.parent)
        U.fsync_write_text(self.path, serialize_vmx(values))
        self.logger.debug("Wrote %d key(s) to %s", len(values), self.path)

    def update(self, changes: Mapping[str, Optional[str]]) -> Dict[str, str]:
        """
        Overlay `changes` onto the file. A None value deletes the key.
        Returns the mapping re-read from disk.
        """
        current = self.read() if self.exists() else {}
        for key, value in changes.items():
            existing = _find_key(current, key)
            if existing is not None:
                del current[existing]
            if value is not None:
                current[key] = str(value)
        self.write(current)
        return self.read()

    def verify(self, expected: Mapping[str, Optional[str]]) -> List[str]:
        """Re-read the file and list keys whose literal value differs from `expected`."""
        actual = self.read()
        mismatches: List[str] = []
        for key, want in expected.items():
            got = get_value(actual, key)
            if got != (None if want is None else str(want)):
                mismatches.append(f"{key}: expected {want!r}, found {got!r}")
        return mismatches

# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/core/secrets.py
"""
Opaque secret handle.

Secrets come from an injected `SecretSource`; nothing in this package
generates or persists plaintext credentials. A `Secret` can be revealed once
and is zeroed when disposed.
"""

from __future__ import annotations

import os
from typing import Optional, Protocol

from .exceptions import WinBuilderError


class SecretConsumed(WinBuilderError):
    pass


class SecretUnavailable(WinBuilderError):
    pass


class Secret:
    __slots__ = ("_buf", "_read", "label")

    def __init__(self, value: bytes, *, label: str = "secret"):
        self._buf: Optional[bytearray] = bytearray(value)
        self._read = False
        self.label = label

    def reveal(self) -> str:
        if self._buf is None or self._read:
            raise SecretConsumed(msg=f"{self.label} was already consumed")
        self._read = True
        return self._buf.decode("utf-8")

    def dispose(self) -> None:
        if self._buf is not None:
            for i in range(len(self._buf)):
                self._buf[i] = 0
            self._buf = None

    @property
    def disposed(self) -> bool:
        return self._buf is None

    def __enter__(self) -> "Secret":
        return self

    def __exit__(self, *exc) -> None:
        self.dispose()

    def __repr__(self) -> str:
        return f"Secret(label={self.label!r}, disposed={self.disposed})"


class SecretSource(Protocol):
    def get_secret(self, purpose: str) -> Secret:
        """Return a fresh handle for `purpose` (e.g. "vm-encryption:<vm name>")."""
        ...


class EnvSecretSource:
    """
    Secrets handed in by the caller's environment (CI variables and the like).

    The variable for purpose "vm-encryption:<vm>" is `<prefix>VM_ENCRYPTION`.
    """

    def __init__(self, prefix: str = "WINBUILDER_"):
        self.prefix = prefix

    def variable_for(self, purpose: str) -> str:
        kind = purpose.split(":", 1)[0]
        return self.prefix + kind.upper().replace("-", "_")

    def get_secret(self, purpose: str) -> Secret:
        var = self.variable_for(purpose)
        value = os.environ.get(var)
        if value is None:
            raise SecretUnavailable(msg=f"No secret for {purpose}: ${var} is not set", context={"variable": var})
        return Secret(value.encode("utf-8"), label=purpose)

# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/core/utils.py
from __future__ import annotations

import ipaddress
import os
import re
import shlex
from pathlib import Path
from typing import Any, Optional, Sequence, Union

PathLike = Union[str, "os.PathLike[str]"]


class U:
    @staticmethod
    def ensure_dir(p: Path) -> None:
        p.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def which(prog: str) -> Optional[str]:
        from shutil import which as _which
        return _which(prog)

    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        x = float(n)
        for unit in ["B", "KiB", "MiB", "GiB", "TiB"]:
            if x < 1024 or unit == "TiB":
                return f"{x:.2f} {unit}" if unit != "B" else f"{int(x)} {unit}"
            x /= 1024
        return f"{n} B"

    @staticmethod
    def human_to_bytes(s: Union[str, int]) -> int:
        """
        Parse human sizes:
          - "10G", "10GiB", "10GB"
          - "512M", "512MiB"
          - "1024" or 1024 (bytes)
        """
        if isinstance(s, int):
            return s
        raw = str(s).strip()
        if not raw:
            raise ValueError("empty size")

        m = re.fullmatch(r"(?i)\s*([0-9]+(?:\.[0-9]+)?)\s*([KMGTP]?)(?:I?B)?\s*", raw)
        if not m:
            raise ValueError(f"unparseable size: {raw!r}")
        mult = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4, "P": 1024**5}[m.group(2).upper()]
        return int(float(m.group(1)) * mult)

    @staticmethod
    def pretty_cmd(cmd: Sequence[str]) -> str:
        return " ".join(shlex.quote(str(x)) for x in cmd)

    @staticmethod
    def normalize_host_path(p: Optional[PathLike]) -> str:
        """
        Comparable form of a host path: forward slashes, lower case,
        no trailing separator, no surrounding quotes.
        """
        if p is None:
            return ""
        s = str(p).strip().strip('"').strip()
        s = s.replace("\\", "/")
        s = re.sub(r"/{2,}", "/", s) if not s.startswith("//") else "//" + re.sub(r"/{2,}", "/", s[2:])
        return s.rstrip("/").lower()

    @staticmethod
    def path_in_text(path: PathLike, text: Optional[str]) -> bool:
        """Case-insensitive, slash-normalized containment test (e.g. a VMX path inside a command line)."""
        needle = U.normalize_host_path(path)
        if not needle or not text:
            return False
        return needle in U.normalize_host_path(text)

    @staticmethod
    def is_unc_path(p: PathLike) -> bool:
        s = str(p)
        return s.startswith("\\\\") or s.startswith("//")

    @staticmethod
    def safe_unlink(p: Path, *, missing_ok: bool = True) -> bool:
        """Remove a file. Returns True if something was removed."""
        try:
            p.unlink()
            return True
        except FileNotFoundError:
            if not missing_ok:
                raise
            return False

    @staticmethod
    def fsync_write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
        """Write a whole file and push it to stable storage before returning."""
        with open(path, "w", encoding=encoding, newline="\n") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def to_text(x: Any) -> str:
        if x is None:
            return ""
        if isinstance(x, bytes):
            return x.decode("utf-8", "replace")
        return str(x)

    @staticmethod
    def first_routable_ip(candidates: Any) -> Optional[str]:
        """First address in `candidates` (text or list) that is neither loopback nor link-local."""
        if isinstance(candidates, str):
            tokens = candidates.split()
        else:
            tokens = [str(c) for c in (candidates or [])]
        for token in tokens:
            try:
                addr = ipaddress.ip_address(token.strip())
            except ValueError:
                continue
            if not addr.is_loopback and not addr.is_link_local:
                return str(addr)
        return None

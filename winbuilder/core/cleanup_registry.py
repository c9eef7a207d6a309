# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# winbuilder/core/cleanup_registry.py
"""
Compensating-action registry for build resources.

Anything that acquires a resource with a cleanup obligation (VM, disk,
mount, staged media, share, temp account) registers an entry here. The
success path unregisters; the failure path calls `invoke_all()` which runs
the actions newest-first. An entry is only dropped once its action has run
successfully, so failed cleanups stay visible to the operator.
"""

from __future__ import annotations

import datetime as _dt
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generator, Iterable, List, Optional, Union

from .exceptions import ResourceLeakRisk
from .logging_utils import safe_logger


class ResourceType(str, Enum):
    VM = "VM"
    DISK = "Disk"
    IMAGE_MOUNT = "ImageMount"
    REMOVABLE_MEDIA = "RemovableMedia"
    TEMP_FILE = "TempFile"
    NETWORK_SHARE = "NetworkShare"
    USER_ACCOUNT = "UserAccount"
    OTHER = "Other"


@dataclass
class CleanupEntry:
    id: str
    name: str
    resource_type: ResourceType
    resource_id: str
    action: Callable[[], Any]
    registered_at: _dt.datetime = field(default_factory=lambda: _dt.datetime.now(_dt.timezone.utc))
    last_error: Optional[str] = None


@dataclass(frozen=True)
class CleanupSummary:
    reason: str
    attempted: int
    succeeded: int
    failed: int
    failures: List[ResourceLeakRisk] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return self.failed == 0


TypeFilter = Union[ResourceType, Iterable[ResourceType], None]


def _normalize_filter(resource_type: TypeFilter) -> Optional[set]:
    if resource_type is None:
        return None
    if isinstance(resource_type, ResourceType):
        return {resource_type}
    return set(resource_type)


class CleanupRegistry:
    """
    Ordered, thread-safe registry of cleanup actions.

    The registry is owned by whoever drives the build and passed by
    reference to the components that acquire resources.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = safe_logger(logger)
        self._lock = threading.RLock()
        self._entries: List[CleanupEntry] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def register(
        self,
        name: str,
        resource_type: ResourceType,
        resource_id: str,
        action: Callable[[], Any],
    ) -> str:
        entry = CleanupEntry(
            id=uuid.uuid4().hex,
            name=name,
            resource_type=ResourceType(resource_type),
            resource_id=str(resource_id),
            action=action,
        )
        with self._lock:
            self._entries.append(entry)
        self.logger.debug("Registered cleanup %s [%s] %s (id=%s)", name, entry.resource_type.value, resource_id, entry.id)
        return entry.id

    def unregister(self, entry_id: str) -> bool:
        """Drop an entry without running it (the resource was handed off or released normally)."""
        with self._lock:
            for i, e in enumerate(self._entries):
                if e.id == entry_id:
                    del self._entries[i]
                    self.logger.debug("Unregistered cleanup %s (id=%s)", e.name, entry_id)
                    return True
        return False

    def pending(self, resource_type: TypeFilter = None) -> List[CleanupEntry]:
        wanted = _normalize_filter(resource_type)
        with self._lock:
            return [e for e in self._entries if wanted is None or e.resource_type in wanted]

    def invoke_all(self, reason: str, resource_type: TypeFilter = None) -> CleanupSummary:
        """
        Run matching actions newest-first.

        Never raises because of an individual action; failures are logged,
        kept in the registry and reported in the summary.
        """
        snapshot = list(reversed(self.pending(resource_type)))
        if not snapshot:
            self.logger.debug("No cleanup actions pending (%s)", reason)
            return CleanupSummary(reason=reason, attempted=0, succeeded=0, failed=0)

        self.logger.info("🧹 Running %d cleanup action(s): %s", len(snapshot), reason)
        succeeded = 0
        failures: List[ResourceLeakRisk] = []

        for entry in snapshot:
            try:
                entry.action()
            except Exception as e:
                entry.last_error = f"{type(e).__name__}: {e}"
                failures.append(
                    ResourceLeakRisk(
                        msg=f"Cleanup failed for {entry.name}",
                        cause=e,
                        context={"resource_type": entry.resource_type.value, "resource_id": entry.resource_id},
                    )
                )
                self.logger.error(
                    "Cleanup failed for %s [%s] %s: %s (entry kept)",
                    entry.name,
                    entry.resource_type.value,
                    entry.resource_id,
                    e,
                )
                continue

            succeeded += 1
            self.unregister(entry.id)
            self.logger.debug("Cleaned up %s [%s]", entry.name, entry.resource_type.value)

        summary = CleanupSummary(
            reason=reason,
            attempted=len(snapshot),
            succeeded=succeeded,
            failed=len(failures),
            failures=failures,
        )
        if summary.failed:
            self.logger.warning("Cleanup finished: %d succeeded, %d failed", summary.succeeded, summary.failed)
        else:
            self.logger.info("Cleanup finished: %d succeeded", summary.succeeded)
        return summary

    @contextmanager
    def scope(self, reason: str, resource_type: TypeFilter = None) -> Generator["CleanupRegistry", None, None]:
        """
        Run cleanup if the block raises, then re-raise the original error.

            with registry.scope("image build failed"):
                provider.create_vm(cfg)
                ...
        """
        try:
            yield self
        except BaseException:
            self.invoke_all(reason, resource_type)
            raise

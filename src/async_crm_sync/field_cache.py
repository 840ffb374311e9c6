# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""TTL cache of CRM field metadata.

Metadata is read through three layers: an in-memory copy per module, the
``field_metadata`` table, and finally the remote loader (usually
``CrmClient.get_module_fields``). Fresh remote data is written back to the
table so a restart does not need the CRM to format records.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

from .logger import get_logger
from .models import FieldMetadata
from .persistence import Persistence

FieldLoader = Callable[[str], Awaitable[list[FieldMetadata]]]

DEFAULT_TTL_SECONDS = 300


class FieldMetadataCache:
    """Field metadata per CRM module with expiry and forced refresh.

    Attributes:
        ttl_seconds: Lifetime of an in-memory entry.
        refresh_count: Number of forced refreshes performed.
    """

    def __init__(
        self,
        persistence: Persistence,
        loader: FieldLoader | None = None,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        logger=None,
    ):
        self.persistence = persistence
        self._loader = loader
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self.logger = logger or get_logger()
        self._entries: dict[str, tuple[float, list[FieldMetadata]]] = {}
        self.refresh_count = 0

    async def get_cached_fields(self, module: str) -> list[FieldMetadata]:
        """Return the metadata of ``module``, loading it when missing or stale."""
        entry = self._entries.get(module)
        if entry is not None and self._clock() - entry[0] < self.ttl_seconds:
            return list(entry[1])
        fields = await self.persistence.get_field_metadata(module)
        if not fields and self._loader is not None:
            fields = await self._pull(module)
        self._entries[module] = (self._clock(), fields)
        return list(fields)

    async def force_refresh(self) -> None:
        """Drop every cached module and re-pull the ones already known.

        A module whose pull fails keeps its persisted rows; the failure is
        logged and the remaining modules are still refreshed.
        """
        self.refresh_count += 1
        modules = list(self._entries)
        self._entries.clear()
        if self._loader is None:
            return
        for module in modules:
            try:
                fields = await self._pull(module)
            except Exception:
                self.logger.exception("Field metadata refresh failed for module %s", module)
                continue
            self._entries[module] = (self._clock(), fields)

    async def _pull(self, module: str) -> list[FieldMetadata]:
        fields = await self._loader(module)
        await self.persistence.replace_field_metadata(module, fields)
        self.logger.info("Field metadata for %s refreshed (%d fields)", module, len(fields))
        return fields

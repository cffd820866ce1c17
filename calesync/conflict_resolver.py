from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from calesync.errors import ConflictResolutionError
from calesync.models import LocalEntry
from calesync.push_sync import PushResult
from calesync.state_store import StateStore


logger = logging.getLogger(__name__)

RESOLUTIONS = ("use_local", "use_remote")


@dataclass
class ResolutionResult:
    entry: LocalEntry
    resolution: str
    push: PushResult | None = None


class ConflictResolver:
    def __init__(
        self,
        state_store: StateStore,
        push: Callable[[LocalEntry], PushResult] | None = None,
    ) -> None:
        self.state_store = state_store
        self._push = push

    def resolve(self, entry: LocalEntry, resolution: str) -> ResolutionResult:
        if resolution == "use_local":
            return self.use_local(entry)
        if resolution == "use_remote":
            return self.use_remote(entry)
        raise ValueError(f"Unknown resolution: {resolution}")

    def use_local(self, entry: LocalEntry) -> ResolutionResult:
        if not entry.has_conflict:
            raise ConflictResolutionError("no_conflict", "Entry has no recorded conflict.")
        resolved = entry.clone()
        resolved.clear_conflict()
        resolved.needs_remote_sync = True
        self.state_store.save_entry(resolved)

        push_result = None
        if self._push is not None:
            push_result = self._push(resolved)
            if push_result.ok and push_result.entry is not None:
                resolved = push_result.entry
            else:
                logger.info("Entry %s stays pending after resolution", entry.id)
        return ResolutionResult(entry=resolved, resolution="use_local", push=push_result)

    def use_remote(self, entry: LocalEntry) -> ResolutionResult:
        if not entry.has_conflict:
            raise ConflictResolutionError("no_conflict", "Entry has no recorded conflict.")
        if not entry.has_conflict_snapshot:
            raise ConflictResolutionError("missing_remote_data", "Conflict snapshot is incomplete.")
        resolved = entry.clone()
        resolved.title = entry.conflict_remote_title or ""
        resolved.body = entry.conflict_remote_body or ""
        resolved.event_date = entry.conflict_remote_event_date
        resolved.updated_at = entry.conflict_remote_updated_at
        resolved.linked_event_updated_at = entry.conflict_remote_updated_at
        resolved.needs_remote_sync = False
        resolved.clear_conflict()
        self.state_store.save_entry(resolved)
        return ResolutionResult(entry=resolved, resolution="use_remote")

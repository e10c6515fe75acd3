"""Assignment persistence contract.

Stores only need "last write wins, no corruption": two concurrent writers
for the same (visitor, experiment) always carry the same variant because
bucketing is deterministic. Retention is owned by the store.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

DEFAULT_RETENTION = timedelta(days=30)


class StoreUnavailableError(RuntimeError):
    """The backing storage could not be read or written."""


class AssignmentStore(Protocol):
    def get(self, visitor_id: str, experiment_id: str) -> str | None: ...

    def put(self, visitor_id: str, experiment_id: str, variant_id: str) -> None: ...

    def for_visitor(self, visitor_id: str) -> dict[str, str]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class _Record:
    variant_id: str
    assigned_at: datetime


class InMemoryAssignmentStore:
    """Process-local store, mainly for tests and the simulator."""

    def __init__(
        self,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.retention = retention
        self._clock = clock
        self._records: dict[tuple[str, str], _Record] = {}

    def _is_live(self, record: _Record) -> bool:
        return self._clock() - record.assigned_at < self.retention

    def get(self, visitor_id: str, experiment_id: str) -> str | None:
        record = self._records.get((visitor_id, experiment_id))
        if record is None or not self._is_live(record):
            return None
        return record.variant_id

    def put(self, visitor_id: str, experiment_id: str, variant_id: str) -> None:
        self._records[(visitor_id, experiment_id)] = _Record(variant_id, self._clock())

    def for_visitor(self, visitor_id: str) -> dict[str, str]:
        return {
            exp_id: record.variant_id
            for (vid, exp_id), record in self._records.items()
            if vid == visitor_id and self._is_live(record)
        }

    def delete_experiment(self, experiment_id: str) -> int:
        keys = [k for k in self._records if k[1] == experiment_id]
        for k in keys:
            del self._records[k]
        return len(keys)

    def purge_expired(self) -> int:
        expired = [k for k, r in self._records.items() if not self._is_live(r)]
        for k in expired:
            del self._records[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)

"""Persist normalized records into per-day data documents.

Layout: ``weeks/<ISO week>/<YYYY-MM-DD>.md``.  The frontmatter header holds
``date`` plus one namespace per vendor::

    whoop:
      sleep: {...}
      recovery: {...}
      workouts:
        - {...}

Only the vendor namespace is rewritten.  The body text and any other header
keys are carried over verbatim.  Writes are read-revision / write-conditioned
and re-applied on conflict, so concurrent webhook deliveries for the same
day converge instead of clobbering each other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable, assert_never

from src.integrations.base import (
    RecoveryData,
    RecoveryEvent,
    SleepData,
    SleepEvent,
    WebhookEvent,
    WorkoutData,
    WorkoutEvent,
)
from src.integrations.config_loader import get_integration_config
from src.integrations.frontmatter import dump_frontmatter, parse_frontmatter
from src.services.documents import DocumentStore, WriteConflict, WriteOk

logger = logging.getLogger("fitsync.storage")


def iso_week(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{year}-W{week:02d}"


def document_path(day: date) -> str:
    return f"weeks/{iso_week(day)}/{day.isoformat()}.md"


def stub_body(day: date) -> str:
    return f"# {day.isoformat()}\n\n*No workout logged yet.*\n"


@dataclass
class DayRecord:
    """Everything one vendor has stored for one calendar day."""

    source: str
    date: date
    sleep: SleepData | None = None
    recovery: RecoveryData | None = None
    workouts: list[WorkoutData] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.sleep is None and self.recovery is None and not self.workouts


class BiometricStorage:
    """Read-modify-write of vendor namespaces inside daily documents."""

    def __init__(self, store: DocumentStore, max_write_attempts: int | None = None) -> None:
        self.store = store
        self.max_write_attempts = (
            max_write_attempts or get_integration_config().storage.max_write_attempts
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def store_event(self, event: WebhookEvent) -> bool:
        """Store the record carried by a webhook event."""
        match event:
            case SleepEvent(data=sleep):
                return await self.store_day(sleep.source, sleep.date, sleep=sleep)
            case RecoveryEvent(data=recovery):
                return await self.store_day(recovery.source, recovery.date, recovery=recovery)
            case WorkoutEvent(data=workout):
                return await self.store_day(workout.source, workout.date, workouts=[workout])
            case _:
                assert_never(event)

    async def store_day(
        self,
        source: str,
        day: date,
        *,
        sleep: SleepData | None = None,
        recovery: RecoveryData | None = None,
        workouts: Iterable[WorkoutData] = (),
    ) -> bool:
        """Merge records into ``source``'s namespace of the document for ``day``.

        Sleep and recovery replace whatever was stored.  Workouts are merged
        by record id so a re-delivered workout replaces its earlier copy.

        Returns:
            True when the document holds the records afterwards, False when
            every write attempt lost a revision race.

        Raises:
            FrontmatterError: The existing header is malformed.  Nothing is written.
            StorageError:     The store itself failed.
        """
        workouts = list(workouts)
        if sleep is None and recovery is None and not workouts:
            return True

        def mutate(namespace: dict[str, Any]) -> None:
            if sleep is not None:
                namespace["sleep"] = sleep.to_fields()
            if recovery is not None:
                namespace["recovery"] = recovery.to_fields()
            if workouts:
                namespace["workouts"] = _merge_workouts(namespace.get("workouts"), workouts)

        kinds = [
            name
            for name, present in (
                ("sleep", sleep is not None),
                ("recovery", recovery is not None),
                ("workouts", bool(workouts)),
            )
            if present
        ]
        return await self._update(source, day, mutate, f"Sync {source} {'+'.join(kinds)} for {day}")

    async def _update(
        self,
        source: str,
        day: date,
        mutate: Callable[[dict[str, Any]], None],
        message: str,
    ) -> bool:
        path = document_path(day)
        for attempt in range(1, self.max_write_attempts + 1):
            existing = await self.store.read(path)
            if existing is not None:
                header, body = parse_frontmatter(existing.content)
                revision: str | None = existing.revision
            else:
                header, body, revision = {}, stub_body(day), None

            header.setdefault("date", day.isoformat())
            namespace = header.get(source)
            if not isinstance(namespace, dict):
                namespace = {}
            mutate(namespace)
            header[source] = namespace

            content = dump_frontmatter(header, body)
            if existing is not None and content == existing.content:
                logger.debug("No changes for %s", path)
                return True

            result = await self.store.write(path, content, revision, message)
            match result:
                case WriteOk():
                    logger.info("Stored %s data in %s", source, path)
                    return True
                case WriteConflict():
                    logger.info(
                        "Write conflict on %s (attempt %d/%d), retrying",
                        path,
                        attempt,
                        self.max_write_attempts,
                    )
                case _:
                    assert_never(result)

        logger.warning("Giving up on %s after %d conflicting writes", path, self.max_write_attempts)
        return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_day(self, source: str, day: date) -> DayRecord:
        """Return what ``source`` has stored for ``day`` (empty if nothing)."""
        record = DayRecord(source=source, date=day)
        existing = await self.store.read(document_path(day))
        if existing is None:
            return record

        header, _ = parse_frontmatter(existing.content)
        namespace = header.get(source)
        if not isinstance(namespace, dict):
            return record

        if isinstance(namespace.get("sleep"), dict):
            record.sleep = SleepData.from_fields(source, day, namespace["sleep"])
        if isinstance(namespace.get("recovery"), dict):
            record.recovery = RecoveryData.from_fields(source, day, namespace["recovery"])
        for item in namespace.get("workouts") or []:
            if isinstance(item, dict):
                record.workouts.append(WorkoutData.from_fields(source, day, item))
        return record


def _merge_workouts(existing: Any, incoming: list[WorkoutData]) -> list[dict[str, Any]]:
    merged: dict[str, dict[str, Any]] = {}
    for item in existing if isinstance(existing, list) else []:
        if isinstance(item, dict):
            key = str(item["id"]) if item.get("id") is not None else f"type:{item.get('type')}"
            merged[key] = item
    for workout in incoming:
        merged[workout.dedup_key] = workout.to_fields()
    return list(merged.values())

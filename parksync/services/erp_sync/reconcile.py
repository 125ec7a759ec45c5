"""Create/update/skip decisions for one page of mapped ERP rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from parksync.config import settings
from parksync.services.erp_sync.entities import EntityStore
from parksync.services.erp_sync.integration_config import SyncConfig
from parksync.services.erp_sync.mapper import MapError, MappedRow, is_absent
from parksync.services.erp_sync.stats import ERP_TO_LOCAL, DirectionStats, Outcome, SkipReason

logger = logging.getLogger(__name__)


@dataclass
class RowOutcome:
    unique_key: str | None
    outcome: Outcome
    reason: SkipReason | None = None
    message: str | None = None
    changed_fields: tuple[str, ...] = ()
    conflict: bool = False
    index: int = 0


@dataclass
class ReconcileResult:
    direction: str = ERP_TO_LOCAL
    outcomes: list[RowOutcome] = field(default_factory=list)
    stats: DirectionStats = field(default_factory=DirectionStats)
    # set when the batch was cut short
    error: str | None = None

    def add(self, outcome: RowOutcome) -> None:
        self.outcomes.append(outcome)
        self.stats.record(outcome.outcome, outcome.reason)

    @property
    def errors(self) -> list[RowOutcome]:
        return [item for item in self.outcomes if item.outcome == Outcome.errored]

    @property
    def conflicts(self) -> list[RowOutcome]:
        return [item for item in self.outcomes if item.conflict]


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive values for timezone aware columns."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def values_differ(stored: Any, incoming: Any) -> bool:
    """Type aware inequality between a stored column value and a mapped value."""
    if is_absent(stored) and is_absent(incoming):
        return False
    if stored is None or incoming is None:
        return True
    if isinstance(stored, bool) or isinstance(incoming, bool):
        return bool(stored) != bool(incoming)
    if _is_number(stored) and _is_number(incoming):
        return Decimal(str(stored)) != Decimal(str(incoming))
    if isinstance(stored, datetime) and isinstance(incoming, datetime):
        return _naive(stored) != _naive(incoming)
    if isinstance(stored, date) and isinstance(incoming, date):
        stored_day = stored.date() if isinstance(stored, datetime) else stored
        incoming_day = incoming.date() if isinstance(incoming, datetime) else incoming
        return stored_day != incoming_day
    return str(stored) != str(incoming)


class Reconciler:
    """Applies mapped ERP rows to the local store.

    Rows are handled in input order, each inside its own SAVEPOINT so a
    failing row never takes the rest of the page with it. The caller owns
    the surrounding transaction.
    """

    def __init__(self, db: Session, config: SyncConfig, store: EntityStore, erp_timezone: str | None = None):
        self.db = db
        self.config = config
        self.store = store
        self.spec = config.spec
        self._erp_tz = ZoneInfo(erp_timezone or settings.erp_timezone)

    def reconcile(self, rows: list[MappedRow | MapError], direction: str = ERP_TO_LOCAL) -> ReconcileResult:
        result = ReconcileResult(direction=direction)
        last_position: dict[str, int] = {}
        for position, row in enumerate(rows):
            if isinstance(row, MappedRow):
                last_position[row.unique_key] = position

        parent_cache: dict[Any, Any] = {}
        for position, row in enumerate(rows):
            if isinstance(row, MapError):
                result.add(
                    RowOutcome(
                        unique_key=row.unique_key,
                        outcome=Outcome.skipped,
                        reason=row.reason,
                        message=row.message,
                        index=row.index,
                    )
                )
            elif last_position[row.unique_key] != position:
                result.add(
                    RowOutcome(
                        unique_key=row.unique_key,
                        outcome=Outcome.skipped,
                        reason=SkipReason.duplicate_in_batch,
                        index=row.index,
                    )
                )
            else:
                result.add(self._apply(row, parent_cache))
        return result

    def _apply(self, row: MappedRow, parent_cache: dict) -> RowOutcome:
        try:
            with self.db.begin_nested():
                return self._apply_row(row, parent_cache)
        except Exception as exc:
            logger.warning(
                "ERP_SYNC_ROW_ERROR entity=%s key=%s error=%s", self.spec.name, row.unique_key, exc
            )
            return RowOutcome(
                unique_key=row.unique_key,
                outcome=Outcome.errored,
                message=str(exc),
                index=row.index,
            )

    def _apply_row(self, row: MappedRow, parent_cache: dict) -> RowOutcome:
        existing = self.store.find_by_key(
            self.config.unique_local_field, row.values[self.config.unique_local_field]
        )
        if existing is None:
            return self._create(row, parent_cache)
        return self._update(existing, row)

    def _parent(self, key: Any, cache: dict):
        if key not in cache:
            cache[key] = self.store.find_parent(key)
        return cache[key]

    def _create(self, row: MappedRow, parent_cache: dict) -> RowOutcome:
        values = {**row.defaults, **row.values}
        requirement = self.spec.parent
        if requirement is not None:
            parent_key = values.get(requirement.local_field)
            parent = self._parent(parent_key, parent_cache) if parent_key is not None else None
            if parent is None:
                return RowOutcome(
                    unique_key=row.unique_key,
                    outcome=Outcome.skipped,
                    reason=SkipReason.parent_not_found,
                    message=f"{requirement.parent_entity} {parent_key} not found",
                    index=row.index,
                )
            for name in requirement.required_fields:
                if is_absent(getattr(parent, name, None)):
                    return RowOutcome(
                        unique_key=row.unique_key,
                        outcome=Outcome.skipped,
                        reason=SkipReason.parent_missing_required_field,
                        message=f"{requirement.parent_entity} {parent_key} has no {name}",
                        index=row.index,
                    )

        rule = self.spec.sequence
        if rule is not None and values.get(rule.field) is None:
            scope_value = values.get(rule.scope_field)
            if requirement is not None and requirement.local_field == rule.scope_field:
                # serialize allocation per parent
                self.store.find_parent(scope_value, lock=True)
            values[rule.field] = self.store.next_sequence(scope_value)

        now = datetime.now(UTC)
        values.update(created_at=now, updated_at=now, erp_synced_at=now)
        self.store.create(values)
        return RowOutcome(unique_key=row.unique_key, outcome=Outcome.created, index=row.index)

    def _has_pending_local_change(self, existing) -> bool:
        synced_at = as_utc(existing.erp_synced_at)
        if synced_at is None:
            return True
        updated_at = as_utc(existing.updated_at)
        return updated_at is not None and updated_at > synced_at

    def _to_erp_wall_clock(self, value: datetime) -> datetime:
        return as_utc(value).astimezone(self._erp_tz).replace(tzinfo=None)

    def _update(self, existing, row: MappedRow) -> RowOutcome:
        changes = {
            name: value
            for name, value in row.values.items()
            if name != self.config.unique_local_field and values_differ(getattr(existing, name), value)
        }
        if not changes:
            return RowOutcome(
                unique_key=row.unique_key,
                outcome=Outcome.skipped,
                reason=SkipReason.no_change,
                index=row.index,
            )

        conflict = False
        if self.config.two_way and self._has_pending_local_change(existing):
            if (
                row.erp_modified_at is not None
                and existing.erp_synced_at is not None
                and _naive(row.erp_modified_at) <= self._to_erp_wall_clock(existing.erp_synced_at)
            ):
                return RowOutcome(
                    unique_key=row.unique_key,
                    outcome=Outcome.skipped,
                    reason=SkipReason.local_change_pending,
                    index=row.index,
                )
            conflict = True

        changed_fields = tuple(changes)
        now = datetime.now(UTC)
        changes.update(updated_at=now, erp_synced_at=now)
        self.store.update(existing, changes)
        return RowOutcome(
            unique_key=row.unique_key,
            outcome=Outcome.updated,
            changed_fields=changed_fields,
            conflict=conflict,
            index=row.index,
        )

"""Per-direction sync counters and skip reason codes."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class SkipReason(enum.Enum):
    no_change = "NO_CHANGE"
    duplicate_in_batch = "DUPLICATE_IN_BATCH"
    parent_not_found = "PARENT_NOT_FOUND"
    parent_missing_required_field = "PARENT_MISSING_REQUIRED_FIELD"
    missing_unique_key = "MISSING_UNIQUE_KEY"
    required_field_missing = "REQUIRED_FIELD_MISSING"
    invalid_value = "INVALID_VALUE"
    local_change_pending = "LOCAL_CHANGE_PENDING"
    conflict_erp_wins = "CONFLICT_ERP_WINS"
    empty_payload = "EMPTY_PAYLOAD"


class Outcome(enum.Enum):
    created = "created"
    updated = "updated"
    skipped = "skipped"
    errored = "errored"


ERP_TO_LOCAL = "erp_to_local"
LOCAL_TO_ERP = "local_to_erp"


@dataclass
class DirectionStats:
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)

    def record(self, outcome: Outcome, reason: SkipReason | None = None) -> None:
        self.total += 1
        if outcome == Outcome.created:
            self.created += 1
        elif outcome == Outcome.updated:
            self.updated += 1
        elif outcome == Outcome.errored:
            self.errors += 1
        else:
            self.skipped += 1
            if reason is not None:
                self.skip_reasons[reason.value] = self.skip_reasons.get(reason.value, 0) + 1

    def merge(self, other: DirectionStats) -> DirectionStats:
        reasons = dict(self.skip_reasons)
        for key, count in other.skip_reasons.items():
            reasons[key] = reasons.get(key, 0) + count
        return DirectionStats(
            total=self.total + other.total,
            created=self.created + other.created,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
            skip_reasons=reasons,
        )

    @property
    def is_balanced(self) -> bool:
        return self.created + self.updated + self.skipped + self.errors == self.total

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "skip_reasons": dict(self.skip_reasons),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> DirectionStats:
        data = data or {}
        return cls(
            total=int(data.get("total", 0)),
            created=int(data.get("created", 0)),
            updated=int(data.get("updated", 0)),
            skipped=int(data.get("skipped", 0)),
            errors=int(data.get("errors", 0)),
            skip_reasons=dict(data.get("skip_reasons") or {}),
        )


@dataclass
class SyncStats:
    erp_to_local: DirectionStats = field(default_factory=DirectionStats)
    local_to_erp: DirectionStats | None = None

    def merge(self, other: SyncStats) -> SyncStats:
        if self.local_to_erp is None:
            local_to_erp = other.local_to_erp
        elif other.local_to_erp is None:
            local_to_erp = self.local_to_erp
        else:
            local_to_erp = self.local_to_erp.merge(other.local_to_erp)
        return SyncStats(erp_to_local=self.erp_to_local.merge(other.erp_to_local), local_to_erp=local_to_erp)

    def to_dict(self) -> dict:
        data = {ERP_TO_LOCAL: self.erp_to_local.to_dict()}
        if self.local_to_erp is not None:
            data[LOCAL_TO_ERP] = self.local_to_erp.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> SyncStats:
        data = data or {}
        local_to_erp = data.get(LOCAL_TO_ERP)
        return cls(
            erp_to_local=DirectionStats.from_dict(data.get(ERP_TO_LOCAL)),
            local_to_erp=DirectionStats.from_dict(local_to_erp) if local_to_erp is not None else None,
        )

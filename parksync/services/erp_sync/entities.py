"""Entity registry and typed local store used by the sync engine.

Every integration names its target entity; the name is resolved once,
when the configuration is loaded, into an ``EntitySpec`` and an
``EntityStore`` bound to the current session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Column, delete, func, or_, select
from sqlalchemy.orm import Session

from parksync.models.parking import Contract, ContractLine, Customer, Item
from parksync.services.erp_sync.errors import UnknownEntityError

# Bookkeeping columns the engine owns; never mapped from ERP fields.
ENGINE_FIELDS = frozenset({"id", "created_at", "updated_at", "erp_synced_at"})


@dataclass(frozen=True)
class ParentRequirement:
    """A row may only be created when its parent row exists locally.

    ``required_fields`` must also be non-empty on the parent.
    """

    local_field: str
    parent_entity: str
    parent_field: str
    required_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class SequenceRule:
    """``field`` is allocated as max+1 among rows sharing ``scope_field``."""

    field: str
    scope_field: str


@dataclass(frozen=True, eq=False)
class EntitySpec:
    name: str
    model: type
    key_field: str
    defaults: dict[str, Any] = field(default_factory=dict)
    parent: ParentRequirement | None = None
    sequence: SequenceRule | None = None
    full_resync_allowed: bool = True

    @property
    def columns(self) -> dict[str, Column]:
        return {
            column.key: column
            for column in self.model.__table__.columns
            if column.key not in ENGINE_FIELDS
        }

    @property
    def required_fields(self) -> set[str]:
        """Fields that must receive a value when a row is created."""
        required = set()
        for name, column in self.columns.items():
            if column.nullable or column.primary_key:
                continue
            if column.default is not None or column.server_default is not None:
                continue
            if self.sequence and name == self.sequence.field:
                continue
            required.add(name)
        return required


class EntityRegistry:
    def __init__(self, specs: list[EntitySpec] | None = None):
        self._specs: dict[str, EntitySpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: EntitySpec) -> None:
        self._specs[spec.name] = spec

    def resolve(self, name: str) -> EntitySpec:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownEntityError(name)
        return spec

    def names(self) -> list[str]:
        return sorted(self._specs)

    def store(self, db: Session, name: str) -> EntityStore:
        return EntityStore(db, self.resolve(name), self)


def normalize_key(value: Any) -> str | None:
    """Comparison form of a unique identifier.

    All-digit strings lose their leading zeros ("00159503" -> "159503",
    "000" -> "0"); other values compare as their trimmed string.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return text.lstrip("0") or "0"
    return text


class EntityStore:
    """Typed persistence operations for one registered entity."""

    def __init__(self, db: Session, spec: EntitySpec, registry: EntityRegistry):
        self.db = db
        self.spec = spec
        self.registry = registry
        self.model = spec.model

    def column(self, name: str):
        return getattr(self.model, name)

    def find_by_key(self, field_name: str, value: Any):
        """Find a row whose ``field_name`` equals ``value``.

        An exact match always wins. Without one, string keys made only of
        digits fall back to stored values that differ by leading zeros.
        """
        if value is None:
            return None
        column = self.column(field_name)
        exact = select(self.model).where(column == value).order_by(self.model.id).limit(1)
        row = self.db.scalars(exact).first()
        if row is not None or not isinstance(value, str):
            return row
        normalized = normalize_key(value)
        if normalized is None or not normalized.isdigit():
            return None
        condition = or_(column == normalized, func.ltrim(column, "0") == normalized.lstrip("0"))
        stmt = select(self.model).where(condition).order_by(self.model.id).limit(1)
        return self.db.scalars(stmt).first()

    def find_parent(self, value: Any, lock: bool = False):
        requirement = self.spec.parent
        if requirement is None or value is None:
            return None
        parent_spec = self.registry.resolve(requirement.parent_entity)
        parent_column = getattr(parent_spec.model, requirement.parent_field)
        stmt = select(parent_spec.model).where(parent_column == value).limit(1)
        if lock:
            stmt = stmt.with_for_update()
        return self.db.scalars(stmt).first()

    def parent_count(self) -> int:
        requirement = self.spec.parent
        if requirement is None:
            return 0
        parent_spec = self.registry.resolve(requirement.parent_entity)
        return self.db.scalar(select(func.count()).select_from(parent_spec.model)) or 0

    def next_sequence(self, scope_value: Any) -> int:
        rule = self.spec.sequence
        current = self.db.scalar(
            select(func.max(self.column(rule.field))).where(self.column(rule.scope_field) == scope_value)
        )
        return (current or 0) + 1

    def create(self, values: dict[str, Any]):
        row = self.model(**values)
        self.db.add(row)
        self.db.flush()
        return row

    def update(self, row, changes: dict[str, Any]):
        for key, value in changes.items():
            setattr(row, key, value)
        self.db.flush()
        return row

    def count(self) -> int:
        return self.db.scalar(select(func.count()).select_from(self.model)) or 0

    def delete_batch(self, limit: int) -> int:
        ids = self.db.scalars(select(self.model.id).order_by(self.model.id).limit(limit)).all()
        if not ids:
            return 0
        self.db.execute(
            delete(self.model).where(self.model.id.in_(ids)).execution_options(synchronize_session=False)
        )
        return len(ids)

    def pending_local_changes(self, limit: int) -> list:
        """Rows never exchanged with the ERP or edited since the last exchange."""
        stmt = (
            select(self.model)
            .where(
                or_(
                    self.model.erp_synced_at.is_(None),
                    self.model.updated_at > self.model.erp_synced_at,
                )
            )
            .order_by(self.model.updated_at, self.model.id)
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())


default_registry = EntityRegistry(
    [
        EntitySpec(
            name="customers",
            model=Customer,
            key_field="trdr",
            defaults={"is_active": True},
        ),
        EntitySpec(
            name="items",
            model=Item,
            key_field="mtrl",
            defaults={"is_active": True},
        ),
        EntitySpec(
            name="contracts",
            model=Contract,
            key_field="inst",
            defaults={"is_active": True},
            # contract_lines reference contracts.inst
            full_resync_allowed=False,
        ),
        EntitySpec(
            name="contract_lines",
            model=ContractLine,
            key_field="instlines",
            parent=ParentRequirement(
                local_field="inst",
                parent_entity="contracts",
                parent_field="inst",
                required_fields=("trdr",),
            ),
            sequence=SequenceRule(field="linenum", scope_field="inst"),
        ),
    ]
)

"""Validated, read-only view of an integration used during a sync run."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from parksync.models.integration import Integration, SyncDirection
from parksync.services.erp_sync.entities import EntityRegistry, EntitySpec
from parksync.services.erp_sync.errors import IntegrationConfigError
from parksync.services.erp_sync.schedule import normalize_cron

DEFAULT_FILTER = "1=1"


@dataclass(frozen=True)
class FieldMapping:
    erp_field: str
    local_field: str


@dataclass(frozen=True, eq=False)
class SyncConfig:
    integration_id: uuid.UUID | None
    name: str
    source_table: str
    erp_object: str
    spec: EntitySpec
    key_field: str
    mappings: tuple[FieldMapping, ...]
    unique_erp_field: str
    unique_local_field: str
    direction: SyncDirection = SyncDirection.one_way
    schedule: str | None = None
    base_filter: str = DEFAULT_FILTER
    modified_field: str | None = None
    field_defaults: dict[str, Any] = field(default_factory=dict)

    @property
    def two_way(self) -> bool:
        return self.direction == SyncDirection.two_way

    @property
    def entity(self) -> str:
        return self.spec.name

    @property
    def erp_fields(self) -> list[str]:
        """ERP columns requested from the source table, in mapping order."""
        fields = [mapping.erp_field for mapping in self.mappings]
        for extra in (self.unique_erp_field, self.modified_field):
            if extra and extra not in fields:
                fields.append(extra)
        return fields

    @property
    def create_defaults(self) -> dict[str, Any]:
        return {**self.spec.defaults, **self.field_defaults}


def parse_field_mappings(raw) -> list[FieldMapping]:
    """Accept the stored list form or a plain ``{erp_field: local_field}`` dict."""
    if not raw:
        return []
    if isinstance(raw, dict):
        return [FieldMapping(str(erp), str(local)) for erp, local in raw.items()]
    mappings = []
    for item in raw:
        if isinstance(item, FieldMapping):
            mappings.append(item)
        elif isinstance(item, dict):
            mappings.append(FieldMapping(str(item.get("erp_field") or ""), str(item.get("local_field") or "")))
        else:
            erp_field, local_field = item
            mappings.append(FieldMapping(str(erp_field), str(local_field)))
    return mappings


def validate_config_fields(
    registry: EntityRegistry,
    *,
    target_entity: str,
    key_field: str,
    mappings: list[FieldMapping],
    unique_erp_field: str,
    unique_local_field: str,
    field_defaults: dict | None = None,
    schedule: str | None = None,
    direction: SyncDirection = SyncDirection.one_way,
) -> tuple[EntitySpec, list[str]]:
    """Return the resolved entity spec and a list of problems (empty when valid)."""
    spec = registry.resolve(target_entity)
    columns = spec.columns
    problems: list[str] = []

    if key_field not in columns:
        problems.append(f"Key field '{key_field}' is not a column of {target_entity}")
    if not mappings:
        problems.append("At least one field mapping is required")

    seen_erp: set[str] = set()
    seen_local: set[str] = set()
    for mapping in mappings:
        if not mapping.erp_field or not mapping.local_field:
            problems.append("Field mappings need both an ERP field and a local field")
            continue
        if mapping.local_field not in columns:
            problems.append(f"Mapped local field '{mapping.local_field}' is not a column of {target_entity}")
        if mapping.erp_field in seen_erp:
            problems.append(f"ERP field '{mapping.erp_field}' is mapped more than once")
        if mapping.local_field in seen_local:
            problems.append(f"Local field '{mapping.local_field}' is fed by more than one ERP field")
        seen_erp.add(mapping.erp_field)
        seen_local.add(mapping.local_field)

    if not unique_erp_field:
        problems.append("Unique identifier ERP field is required")
    if unique_local_field not in seen_local and unique_local_field != key_field:
        problems.append(
            f"Unique local field '{unique_local_field}' must be mapped or be the entity key field"
        )
    if unique_local_field not in columns:
        problems.append(f"Unique local field '{unique_local_field}' is not a column of {target_entity}")

    defaults = {**spec.defaults, **(field_defaults or {})}
    for name in sorted(defaults):
        if name not in columns:
            problems.append(f"Default for unknown field '{name}'")
    covered = seen_local | set(defaults) | {unique_local_field}
    for name in sorted(spec.required_fields - covered):
        problems.append(f"Required field '{name}' has no mapping and no default")

    if direction == SyncDirection.two_way and spec.sequence is not None:
        scope = spec.sequence.scope_field
        if scope not in seen_local:
            problems.append(f"Two-way sync of {target_entity} needs '{scope}' mapped")

    if schedule:
        try:
            normalize_cron(schedule)
        except ValueError as exc:
            problems.append(str(exc))

    return spec, problems


def load_sync_config(integration: Integration, registry: EntityRegistry) -> SyncConfig:
    """Resolve and validate a stored integration.

    Raises ``IntegrationConfigError`` (or ``UnknownEntityError``) before
    any ERP call is made.
    """
    mappings = parse_field_mappings(integration.field_mappings)
    direction = integration.sync_direction or SyncDirection.one_way
    spec, problems = validate_config_fields(
        registry,
        target_entity=integration.target_entity,
        key_field=integration.target_entity_key_field,
        mappings=mappings,
        unique_erp_field=integration.unique_erp_field,
        unique_local_field=integration.unique_local_field,
        field_defaults=integration.field_defaults,
        schedule=integration.schedule,
        direction=direction,
    )
    if not integration.source_table:
        problems.append("Source table is required")
    if problems:
        raise IntegrationConfigError(problems)
    return SyncConfig(
        integration_id=integration.id,
        name=integration.name,
        source_table=integration.source_table,
        erp_object=integration.erp_object or integration.source_table,
        spec=spec,
        key_field=integration.target_entity_key_field,
        mappings=tuple(mappings),
        unique_erp_field=integration.unique_erp_field,
        unique_local_field=integration.unique_local_field,
        direction=direction,
        schedule=integration.schedule,
        base_filter=(integration.filter or "").strip() or DEFAULT_FILTER,
        modified_field=integration.modified_field or None,
        field_defaults=dict(integration.field_defaults or {}),
    )

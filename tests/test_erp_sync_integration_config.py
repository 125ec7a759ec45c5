"""Tests for integration configuration validation."""

import pytest

from parksync.models.integration import SyncDirection
from parksync.services.erp_sync.entities import default_registry
from parksync.services.erp_sync.errors import IntegrationConfigError, UnknownEntityError
from parksync.services.erp_sync.integration_config import (
    DEFAULT_FILTER,
    FieldMapping,
    load_sync_config,
    parse_field_mappings,
    validate_config_fields,
)

CUSTOMER_MAPPINGS = [FieldMapping("TRDR", "trdr"), FieldMapping("NAME", "name")]


def _validate(**overrides):
    options = {
        "target_entity": "customers",
        "key_field": "trdr",
        "mappings": CUSTOMER_MAPPINGS,
        "unique_erp_field": "TRDR",
        "unique_local_field": "trdr",
    }
    options.update(overrides)
    _, problems = validate_config_fields(default_registry, **options)
    return problems


class TestParseFieldMappings:
    def test_list_of_dicts(self):
        assert parse_field_mappings([{"erp_field": "TRDR", "local_field": "trdr"}]) == [FieldMapping("TRDR", "trdr")]

    def test_plain_dict(self):
        assert parse_field_mappings({"TRDR": "trdr", "NAME": "name"}) == CUSTOMER_MAPPINGS

    def test_empty(self):
        assert parse_field_mappings(None) == []


class TestValidateConfigFields:
    def test_valid(self):
        assert _validate() == []

    def test_unknown_entity(self):
        with pytest.raises(UnknownEntityError):
            _validate(target_entity="parking_spots")

    def test_unknown_local_field(self):
        problems = _validate(mappings=[*CUSTOMER_MAPPINGS, FieldMapping("FAX", "fax")])
        assert problems == ["Mapped local field 'fax' is not a column of customers"]

    def test_duplicate_erp_field(self):
        problems = _validate(mappings=[*CUSTOMER_MAPPINGS, FieldMapping("NAME", "code")])
        assert "ERP field 'NAME' is mapped more than once" in problems

    def test_two_erp_fields_for_one_local_field(self):
        problems = _validate(mappings=[*CUSTOMER_MAPPINGS, FieldMapping("NAME2", "name")])
        assert "Local field 'name' is fed by more than one ERP field" in problems

    def test_required_field_without_mapping(self):
        problems = _validate(mappings=[FieldMapping("TRDR", "trdr")])
        assert problems == ["Required field 'name' has no mapping and no default"]

    def test_default_covers_required_field(self):
        assert _validate(mappings=[FieldMapping("TRDR", "trdr")], field_defaults={"name": "Unknown"}) == []

    def test_default_for_unknown_field(self):
        assert _validate(field_defaults={"colour": "red"}) == ["Default for unknown field 'colour'"]

    def test_unique_field_must_be_mapped_or_key(self):
        problems = _validate(unique_local_field="email")
        assert problems == ["Unique local field 'email' must be mapped or be the entity key field"]

    def test_invalid_schedule(self):
        problems = _validate(schedule="every minute")
        assert len(problems) == 1
        assert "Cron expression" in problems[0]

    def test_two_way_lines_need_scope_field(self):
        problems = _validate(
            target_entity="contract_lines",
            key_field="instlines",
            mappings=[FieldMapping("INSTLINES", "instlines")],
            unique_erp_field="INSTLINES",
            unique_local_field="instlines",
            field_defaults={"inst": 1},
            direction=SyncDirection.two_way,
        )
        assert problems == ["Two-way sync of contract_lines needs 'inst' mapped"]


class TestLoadSyncConfig:
    def test_builds_config(self, make_integration):
        integration = make_integration(filter="  ", modified_field="UPDDATE", field_defaults={"city": "Athens"})

        config = load_sync_config(integration, default_registry)

        assert config.entity == "customers"
        assert config.base_filter == DEFAULT_FILTER
        assert config.erp_object == "TRDR"
        assert config.create_defaults == {"is_active": True, "city": "Athens"}
        assert config.two_way is False

    def test_raises_with_all_problems(self, make_integration):
        integration = make_integration(field_mappings=[], unique_local_field="nope")

        with pytest.raises(IntegrationConfigError) as exc_info:
            load_sync_config(integration, default_registry)

        assert "At least one field mapping is required" in exc_info.value.problems
        assert "Unique local field 'nope' is not a column of customers" in exc_info.value.problems

"""
Unit tests for field extraction, mapping resolution and source filters.
"""

import pytest

from item_bridge.client.exceptions import MappingValidationError, ValidationError
from item_bridge.migration.field_mapping import (
    build_default_field_mapping,
    build_platform_filters,
    extract_field_value,
    extract_match_value,
    map_item_fields,
    resolve_field_mapping,
    resolve_match_field,
    strip_vanished_fields,
    validate_match_fields,
)
from item_bridge.migration.models import ItemFilters, ItemMigrationConfig, MigrationMode
from tests.fixtures import make_item, schema_field

# --- Fixtures ---


@pytest.fixture
def source_schema():
    return [
        schema_field(1, "email"),
        schema_field(2, "full-name", label="Name"),
        schema_field(3, "status", type="category"),
        schema_field(4, "created", type="created_on"),
    ]


@pytest.fixture
def target_schema():
    return [
        schema_field(11, "email"),
        schema_field(12, "name", label="Name"),
        schema_field(13, "total", type="calculation"),
        schema_field(14, "state", type="category"),
    ]


class TestExtractFieldValue:
    """Raw field values to write payloads."""

    def test_text_uses_first_value(self):
        field = {"type": "text", "values": [{"value": "hello"}, {"value": "ignored"}]}
        assert extract_field_value(field) == "hello"

    def test_no_values(self):
        assert extract_field_value({"type": "text", "values": []}) is None

    def test_date(self):
        field = {"type": "date", "values": [{"start": "2024-01-01", "end": "2024-01-02"}]}
        assert extract_field_value(field) == {"start": "2024-01-01", "end": "2024-01-02"}

    def test_category_ids(self):
        field = {"type": "category", "values": [{"value": {"id": 1}}, {"value": {"id": 3}}]}
        assert extract_field_value(field) == [1, 3]

    def test_app_references(self):
        field = {"type": "app", "values": [{"value": {"item_id": 77, "title": "x"}}]}
        assert extract_field_value(field) == [77]

    def test_contact_prefers_profile_id(self):
        field = {
            "type": "contact",
            "values": [{"value": {"profile_id": 5, "user_id": 9}}, {"value": {"user_id": 9}}],
        }
        assert extract_field_value(field) == [5, 9]

    def test_money_defaults_currency(self):
        assert extract_field_value({"type": "money", "values": [{"value": "12.50"}]}) == {
            "value": "12.50",
            "currency": "USD",
        }

    def test_email_entries_default_type(self):
        field = {
            "type": "email",
            "values": [{"value": "a@b.c"}, {"type": "home", "value": "d@e.f"}],
        }
        assert extract_field_value(field) == [
            {"type": "work", "value": "a@b.c"},
            {"type": "home", "value": "d@e.f"},
        ]

    def test_phone_entries_default_type(self):
        field = {"type": "phone", "values": [{"value": "+15550100"}]}
        assert extract_field_value(field) == [{"type": "mobile", "value": "+15550100"}]


class TestMapItemFields:
    """Source item to target payload."""

    def test_maps_and_filters(self):
        item = make_item(1, email="a@b.c", full_name="Ann", unmapped="x", empty=None)
        item["fields"].append(
            {"external_id": "created", "type": "created_on", "values": [{"value": "2024"}]}
        )
        mapping = {"email": "email", "full-name": "name", "empty": "empty", "created": "created"}

        assert map_item_fields(item, mapping) == {"email": "a@b.c", "name": "Ann"}

    def test_extract_match_value_missing_field(self):
        assert extract_match_value(make_item(1, email="x"), "phone") is None


class TestResolveFieldMapping:
    """Mappings given by field id or external id."""

    def test_resolves_ids_to_external_ids(self, source_schema, target_schema):
        resolved = resolve_field_mapping(
            {"1": "11", "full-name": "name"}, source_schema, target_schema
        )
        assert resolved == {"email": "email", "full-name": "name"}

    def test_drops_read_only_targets(self, source_schema, target_schema):
        resolved = resolve_field_mapping(
            {"email": "email", "status": "total"}, source_schema, target_schema
        )
        assert resolved == {"email": "email"}

    def test_unknown_fields_raise(self, source_schema, target_schema):
        with pytest.raises(MappingValidationError, match="target field 'nope'"):
            resolve_field_mapping({"email": "nope"}, source_schema, target_schema)

    def test_default_mapping_pairs_by_external_id_then_label(self, source_schema, target_schema):
        mapping = build_default_field_mapping(source_schema, target_schema)
        assert mapping == {"email": "email", "full-name": "name"}

    def test_default_mapping_never_uses_read_only_targets(self):
        mapping = build_default_field_mapping(
            [schema_field(1, "total", type="calculation")],
            [schema_field(2, "total", type="calculation")],
        )
        assert mapping == {}

    def test_strip_vanished_fields(self, target_schema):
        assert strip_vanished_fields({"email": "x", "gone": 1}, target_schema) == {"email": "x"}


class TestMatchFields:
    """Match-field validation."""

    def _config(self, **overrides) -> ItemMigrationConfig:
        return ItemMigrationConfig(source_app_id=1, target_app_id=2, **overrides)

    def test_update_mode_requires_match_fields(self, source_schema, target_schema):
        with pytest.raises(MappingValidationError, match="update mode requires"):
            validate_match_fields(
                self._config(mode=MigrationMode.UPDATE), source_schema, target_schema
            )

    def test_match_fields_must_be_paired(self, source_schema, target_schema):
        with pytest.raises(MappingValidationError, match="set together"):
            validate_match_fields(
                self._config(source_match_field="email"), source_schema, target_schema
            )

    def test_missing_match_field(self, source_schema, target_schema):
        config = self._config(source_match_field="email", target_match_field="phone")
        with pytest.raises(MappingValidationError, match="target match field 'phone'"):
            validate_match_fields(config, source_schema, target_schema)

    def test_non_portable_type(self, source_schema, target_schema):
        config = self._config(source_match_field="status", target_match_field="state")
        with pytest.raises(MappingValidationError, match="cannot be used for matching"):
            validate_match_fields(config, source_schema, target_schema)

    def test_valid_match_fields_by_id(self, source_schema, target_schema):
        config = self._config(source_match_field="1", target_match_field="11")
        validate_match_fields(config, source_schema, target_schema)

        assert resolve_match_field("1", source_schema) == "email"
        assert resolve_match_field(None, source_schema) is None


class TestBuildPlatformFilters:
    """Source filters to the platform filter expression."""

    def test_none(self):
        assert build_platform_filters(None) == {}

    def test_dates_and_tags(self):
        filters = ItemFilters(
            created_from="2024-01-01",
            created_to="2024-06-30",
            last_edit_from="2024-03-01",
            tags=["vip", "  ", "lead "],
        )
        assert build_platform_filters(filters) == {
            "created_on": {"from": "2024-01-01", "to": "2024-06-30"},
            "last_event_on": {"from": "2024-03-01"},
            "tags": ["vip", "lead"],
        }

    def test_malformed_date(self):
        with pytest.raises(ValidationError, match="created_from"):
            build_platform_filters(ItemFilters(created_from="01/02/2024"))

    def test_inverted_range(self):
        with pytest.raises(ValidationError, match="is after"):
            build_platform_filters(
                ItemFilters(last_edit_from="2024-05-01", last_edit_to="2024-04-01")
            )

    def test_empty_filters(self):
        assert ItemFilters().is_empty()
        assert build_platform_filters(ItemFilters()) == {}

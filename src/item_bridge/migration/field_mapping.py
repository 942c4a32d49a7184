"""Field extraction, field mapping and source filters.

Items carry a list of typed fields, each with a ``values`` list whose
shape depends on the field type. This module turns those raw values into
write payloads for the target app, resolves mappings given by field id or
external id, and validates the fields used for matching.
"""

from datetime import datetime
from typing import Any

from item_bridge.client.exceptions import MappingValidationError, ValidationError
from item_bridge.migration.models import ItemFilters, ItemMigrationConfig, MigrationMode
from item_bridge.utils.logging import get_logger

logger = get_logger(__name__)

# Target field types the API refuses to write
READ_ONLY_TARGET_FIELD_TYPES = frozenset(
    {"calculation", "created_on", "created_by", "created_via", "app_item_id_icon"}
)

# Source system fields that are never copied
SYSTEM_SOURCE_FIELD_TYPES = frozenset({"created_on", "created_by", "created_via"})

# Field types whose values can be compared across instances
PORTABLE_MATCH_FIELD_TYPES = frozenset(
    {"text", "number", "calculation", "email", "phone", "tel", "location", "duration", "money"}
)

Schema = list[dict[str, Any]]


def _typed_entries(values: list[dict[str, Any]], default_type: str) -> list[dict[str, str]]:
    entries = []
    for entry in values:
        raw = entry.get("value")
        entries.append(
            {
                "type": entry.get("type") or default_type,
                "value": raw if isinstance(raw, str) else str(raw or ""),
            }
        )
    return entries


def extract_field_value(field: dict[str, Any]) -> Any:
    """Convert a raw item field into the value shape the write API accepts.

    Args:
        field: Item field with ``type`` and ``values``

    Returns:
        Extracted value, or None when the field has no values
    """
    values = field.get("values") or []
    if not values:
        return None

    first = values[0]
    field_type = field.get("type")

    if field_type == "date":
        return {"start": first.get("start"), "end": first.get("end")}
    if field_type == "category":
        return [(entry.get("value") or {}).get("id") for entry in values]
    if field_type == "app":
        return [(entry.get("value") or {}).get("item_id") for entry in values]
    if field_type == "contact":
        contacts = []
        for entry in values:
            contact = entry.get("value") or {}
            contacts.append(contact.get("profile_id") or contact.get("user_id"))
        return contacts
    if field_type == "money":
        amount = first.get("value")
        if isinstance(amount, dict):
            amount = amount.get("value")
        return {"value": amount, "currency": first.get("currency") or "USD"}
    if field_type in ("phone", "tel"):
        return _typed_entries(values, "mobile")
    if field_type == "email":
        return _typed_entries(values, "work")

    # text, number, calculation, location, duration, question and the rest
    return first.get("value")


def find_item_field(item: dict[str, Any], external_id: str) -> dict[str, Any] | None:
    for field in item.get("fields", []):
        if field.get("external_id") == external_id:
            return field
    return None


def extract_match_value(item: dict[str, Any], external_id: str) -> Any:
    """Return the extracted value of field ``external_id``, or None."""
    field = find_item_field(item, external_id)
    if field is None:
        return None
    return extract_field_value(field)


def map_item_fields(item: dict[str, Any], field_mapping: dict[str, str]) -> dict[str, Any]:
    """Build the target field payload for a source item.

    Unmapped fields, system fields and fields without values are left out.

    Args:
        item: Source item
        field_mapping: Source external id -> target external id

    Returns:
        Target external id -> value
    """
    mapped: dict[str, Any] = {}
    for field in item.get("fields", []):
        target = field_mapping.get(field.get("external_id", ""))
        if not target:
            continue
        if field.get("type") in SYSTEM_SOURCE_FIELD_TYPES:
            continue
        if not field.get("values"):
            continue
        mapped[target] = extract_field_value(field)
    return mapped


def _index_schema(schema: Schema) -> tuple[dict[str, dict[str, Any]], dict[str, dict[str, Any]]]:
    by_id = {str(field["field_id"]): field for field in schema if field.get("field_id") is not None}
    by_external = {field["external_id"]: field for field in schema if field.get("external_id")}
    return by_id, by_external


def _lookup(key: str, by_id: dict, by_external: dict) -> dict[str, Any] | None:
    return by_external.get(key) or by_id.get(str(key))


def resolve_field_mapping(
    field_mapping: dict[str, str], source_schema: Schema, target_schema: Schema
) -> dict[str, str]:
    """Resolve a mapping given by field ids or external ids to external ids.

    Mappings onto read-only target fields are dropped.

    Args:
        field_mapping: Source field -> target field (field id or external id)
        source_schema: Source app fields
        target_schema: Target app fields

    Returns:
        Source external id -> target external id

    Raises:
        MappingValidationError: If a referenced field does not exist
    """
    source_by_id, source_by_external = _index_schema(source_schema)
    target_by_id, target_by_external = _index_schema(target_schema)

    resolved: dict[str, str] = {}
    missing: list[str] = []
    dropped = 0

    for source_key, target_key in field_mapping.items():
        source_field = _lookup(source_key, source_by_id, source_by_external)
        target_field = _lookup(target_key, target_by_id, target_by_external)

        if source_field is None:
            missing.append(f"source field '{source_key}'")
            continue
        if target_field is None:
            missing.append(f"target field '{target_key}'")
            continue

        if target_field.get("type") in READ_ONLY_TARGET_FIELD_TYPES:
            logger.debug(
                "read_only_target_field_skipped",
                source_field=source_field["external_id"],
                target_field=target_field["external_id"],
                target_type=target_field.get("type"),
            )
            dropped += 1
            continue

        resolved[source_field["external_id"]] = target_field["external_id"]

    if missing:
        raise MappingValidationError(f"Unknown fields in mapping: {', '.join(missing)}")

    logger.info(
        "field_mapping_resolved",
        requested=len(field_mapping),
        resolved=len(resolved),
        read_only_dropped=dropped,
    )
    return resolved


def build_default_field_mapping(source_schema: Schema, target_schema: Schema) -> dict[str, str]:
    """Pair fields by external id, then by label and type.

    Read-only target fields are never used.

    Returns:
        Source external id -> target external id
    """
    writable = [
        field for field in target_schema if field.get("type") not in READ_ONLY_TARGET_FIELD_TYPES
    ]
    writable_by_external = {
        field["external_id"]: field for field in writable if field.get("external_id")
    }

    mapping: dict[str, str] = {}
    used: set[str] = set()

    source_fields = [field for field in source_schema if field.get("external_id")]

    for field in source_fields:
        target = writable_by_external.get(field["external_id"])
        if target:
            mapping[field["external_id"]] = target["external_id"]
            used.add(target["external_id"])

    for field in source_fields:
        if field["external_id"] in mapping:
            continue
        for target in writable_by_external.values():
            if (
                target["external_id"] not in used
                and target.get("label") == field.get("label")
                and target.get("type") == field.get("type")
            ):
                mapping[field["external_id"]] = target["external_id"]
                used.add(target["external_id"])
                break

    logger.info(
        "default_field_mapping_built",
        source_fields=len(source_schema),
        writable_target_fields=len(writable),
        mapped=len(mapping),
    )
    return mapping


def validate_match_fields(
    config: ItemMigrationConfig, source_schema: Schema, target_schema: Schema
) -> None:
    """Check the configured match fields exist and hold portable values.

    Raises:
        MappingValidationError: If the match configuration is unusable
    """
    source_key = config.source_match_field
    target_key = config.target_match_field

    if config.mode in (MigrationMode.UPDATE, MigrationMode.UPSERT) and not (
        source_key and target_key
    ):
        raise MappingValidationError(
            f"{config.mode.value} mode requires both source_match_field and target_match_field"
        )
    if bool(source_key) != bool(target_key):
        raise MappingValidationError(
            "source_match_field and target_match_field must be set together"
        )
    if not source_key:
        return

    for side, key, schema in (
        ("source", source_key, source_schema),
        ("target", target_key, target_schema),
    ):
        by_id, by_external = _index_schema(schema)
        field = _lookup(key, by_id, by_external)
        if field is None:
            raise MappingValidationError(f"{side} match field '{key}' does not exist")
        if field.get("type") not in PORTABLE_MATCH_FIELD_TYPES:
            raise MappingValidationError(
                f"{side} match field '{key}' has type '{field.get('type')}', which cannot be "
                f"used for matching (allowed: {', '.join(sorted(PORTABLE_MATCH_FIELD_TYPES))})"
            )


def resolve_match_field(key: str | None, schema: Schema) -> str | None:
    """Return the external id of a match field given by id or external id."""
    if not key:
        return None
    by_id, by_external = _index_schema(schema)
    field = _lookup(key, by_id, by_external)
    return field["external_id"] if field else key


def strip_vanished_fields(fields: dict[str, Any], target_schema: Schema) -> dict[str, Any]:
    """Drop payload entries whose target field no longer exists."""
    known = {field["external_id"] for field in target_schema if field.get("external_id")}
    return {key: value for key, value in fields.items() if key in known}


def _parse_filter_date(name: str, value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise ValidationError(
            f"Invalid date for {name}: '{value}' (expected YYYY-MM-DD)"
        ) from e


def _date_range(
    from_name: str, from_value: str | None, to_name: str, to_value: str | None
) -> dict[str, str] | None:
    start = (from_value or "").strip() or None
    end = (to_value or "").strip() or None
    if not start and not end:
        return None

    parsed_start = _parse_filter_date(from_name, start) if start else None
    parsed_end = _parse_filter_date(to_name, end) if end else None
    if parsed_start and parsed_end and parsed_start.replace(tzinfo=None) > parsed_end.replace(
        tzinfo=None
    ):
        raise ValidationError(f"{from_name} ({start}) is after {to_name} ({end})")

    date_range = {}
    if start:
        date_range["from"] = start
    if end:
        date_range["to"] = end
    return date_range


def build_platform_filters(filters: ItemFilters | None) -> dict[str, Any]:
    """Convert item filters to the platform filter expression.

    Args:
        filters: Item filters (may be None)

    Returns:
        Platform filters (``created_on``, ``last_event_on``, ``tags``)

    Raises:
        ValidationError: On malformed dates or an inverted range
    """
    if filters is None:
        return {}

    platform_filters: dict[str, Any] = {}

    created = _date_range("created_from", filters.created_from, "created_to", filters.created_to)
    if created:
        platform_filters["created_on"] = created

    last_event = _date_range(
        "last_edit_from", filters.last_edit_from, "last_edit_to", filters.last_edit_to
    )
    if last_event:
        platform_filters["last_event_on"] = last_event

    tags = [tag.strip() for tag in filters.tags if tag.strip()]
    if tags:
        platform_filters["tags"] = tags

    if platform_filters:
        logger.debug("source_filters_built", filters=platform_filters)
    return platform_filters

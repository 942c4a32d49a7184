"""
Shared test doubles for the item bridge tests.

Usage:
    from tests.fixtures import FakePlatform, make_item, schema_field
"""

from tests.fixtures.platform import (
    FakeClock,
    FakePlatform,
    contact_schema,
    make_item,
    schema_field,
)

__all__ = [
    "FakeClock",
    "FakePlatform",
    "contact_schema",
    "make_item",
    "schema_field",
]

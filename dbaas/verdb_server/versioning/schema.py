"""
Setup-time registration of versioned field sets.

A VersionedSchema takes the user's field definitions and derives the two
fixed record shapes the versioning core works with:
- live fields: the user fields plus the _version counter
- history fields: the user fields relaxed (nothing required, nothing
  unique) plus the composite _id, _version, _changed_by and _changed_at

Invariants:
    - User schemas can't declare _version, _changed_by or _changed_at
    - A declared _id field is ignored; ids are owned by the store
    - History fields never enforce required/unique constraints

Example:
    >>> schema = VersionedSchema.register([
    ...     FieldDef("title", FieldKind.STRING, required=True),
    ...     FieldDef("tenant_id", FieldKind.ID),
    ... ])
    >>> schema.validate_payload({"title": "Home"})
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable

from .errors import SchemaError
from .types import CHANGED_AT, CHANGED_BY, ID, RESERVED_FIELDS, VERSION


class FieldKind(Enum):
    """Supported field types."""

    ANY = "any"
    STRING = "str"
    INTEGER = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    TIMESTAMP = "timestamp"  # Unix milliseconds
    ID = "id"  # Opaque identifier (actor, tenant, reference)
    JSON = "json"
    LIST_STRING = "list_str"


_VALIDATORS = {
    FieldKind.ANY: lambda _: True,
    FieldKind.STRING: lambda v: isinstance(v, str),
    FieldKind.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    FieldKind.FLOAT: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    FieldKind.BOOLEAN: lambda v: isinstance(v, bool),
    FieldKind.TIMESTAMP: lambda v: isinstance(v, int) and v >= 0,
    FieldKind.ID: lambda v: isinstance(v, (str, int)) and not isinstance(v, bool),
    FieldKind.JSON: lambda _: True,
    FieldKind.LIST_STRING: lambda v: isinstance(v, list) and all(isinstance(i, str) for i in v),
}


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single document field.

    Attributes:
        name: Field name
        kind: Value type
        required: Whether the field must be present on the live record
        unique: Whether the live collection treats the value as unique
        default: Default value if not provided
    """

    name: str
    kind: FieldKind = FieldKind.ANY
    required: bool = False
    unique: bool = False
    default: Any = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Field name cannot be empty")

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this field definition.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            if self.required:
                return False, f"Field '{self.name}' is required"
            return True, None
        if not _VALIDATORS[self.kind](value):
            return False, f"Field '{self.name}' expects {self.kind.value}, got {type(value).__name__}"
        return True, None


def check_reserved(payload: dict[str, Any]) -> None:
    """Reject payloads that touch bookkeeping fields.

    Raises:
        SchemaError: If the payload contains a reserved field name
    """
    reserved = sorted(set(payload) & RESERVED_FIELDS)
    if reserved:
        raise SchemaError(f"Payload can't contain reserved fields: {reserved}", fields=reserved)


@dataclass(frozen=True)
class VersionedSchema:
    """The live and history field sets derived from user fields."""

    fields: tuple[FieldDef, ...] = ()

    @classmethod
    def register(cls, fields: Iterable[FieldDef | str]) -> VersionedSchema:
        """Register user fields.

        Args:
            fields: FieldDef objects, or bare names for untyped fields

        Raises:
            SchemaError: If a field uses a versioning field name
        """
        defs = tuple(f if isinstance(f, FieldDef) else FieldDef(f) for f in fields)

        clashing = sorted(d.name for d in defs if d.name in (VERSION, CHANGED_BY, CHANGED_AT))
        if clashing:
            raise SchemaError(f"Schema can't have a field called {clashing[0]!r}", fields=clashing)

        return cls(fields=tuple(d for d in defs if d.name != ID))

    @property
    def declared(self) -> bool:
        return bool(self.fields)

    @property
    def live_fields(self) -> tuple[FieldDef, ...]:
        return self.fields + (FieldDef(VERSION, FieldKind.INTEGER, required=True, default=0),)

    @property
    def history_fields(self) -> tuple[FieldDef, ...]:
        relaxed = tuple(replace(f, required=False, unique=False) for f in self.fields)
        return relaxed + (
            FieldDef(ID, FieldKind.JSON, required=True, unique=True),
            FieldDef(VERSION, FieldKind.INTEGER, required=True, default=0),
            FieldDef(CHANGED_BY, FieldKind.ID),
            FieldDef(CHANGED_AT, FieldKind.TIMESTAMP),
        )

    def validate_payload(self, payload: dict[str, Any]) -> None:
        """Validate a live payload.

        Undeclared fields are only rejected when fields were declared.

        Raises:
            SchemaError: On reserved, unknown, missing or mistyped fields
        """
        check_reserved(payload)
        if not self.declared:
            return

        by_name = {f.name: f for f in self.fields}
        unknown = sorted(set(payload) - set(by_name))
        if unknown:
            raise SchemaError(f"Unknown fields: {unknown}", fields=unknown)

        errors: dict[str, str] = {}
        for name, field_def in by_name.items():
            ok, message = field_def.validate_value(payload.get(name))
            if not ok:
                errors[name] = message or name
        if errors:
            raise SchemaError("; ".join(errors.values()), fields=sorted(errors))

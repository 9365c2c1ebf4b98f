"""
Registry of entity tables that recurring series may materialize into.

The engine does not own domain tables. The surrounding application
registers each table (a SQLAlchemy ``Table``) together with the columns
that scope overlap detection, e.g. ``room_id`` for room bookings. From the
table the registry derives which fields a template must provide and which
it may not set.

Templates are validated against the registered table when a series is
created or patched, and checked for drift against the live database schema
before every expansion run.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import MetaData, Table, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from timeslot.src.services.exceptions import ValidationError
from timeslot.src.utils.logging_config import get_logger


logger = get_logger("services")

# Columns maintained by the database or the audit layer, never by templates
PROTECTED_FIELDS = ("id", "created_at", "created_by", "updated_at", "updated_by")

ISSUE_MISSING_REQUIRED = "Required field missing from template"
ISSUE_FIELD_REMOVED = "Field no longer exists in entity schema"


@dataclass
class EntityDefinition:
    """
    A registered entity table.

    Attributes:
        name: Table name
        table: SQLAlchemy table used for reads and writes
        conflict_scope: Columns that must match for two rows to be checked for overlap
        required_fields: Columns a template must supply
    """

    name: str
    table: Table
    conflict_scope: Tuple[str, ...] = ()
    required_fields: Tuple[str, ...] = field(default=())

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.table.columns)

    @property
    def editable_fields(self) -> Tuple[str, ...]:
        """Columns a template may set."""
        return tuple(
            c.name for c in self.table.columns
            if not c.primary_key and c.name not in PROTECTED_FIELDS
        )

    def has_field(self, name: str) -> bool:
        return name in self.table.columns


def _derive_required(table: Table) -> Tuple[str, ...]:
    return tuple(
        c.name for c in table.columns
        if not c.primary_key
        and not c.nullable
        and c.default is None
        and c.server_default is None
        and c.name not in PROTECTED_FIELDS
    )


class EntityRegistry:
    """
    Lookup of entity definitions by table name.

    Usage:
        >>> registry = EntityRegistry()
        >>> registry.register(bookings_table, conflict_scope=("room_id",))
        >>> registry.get("bookings").required_fields
        ('room_id', 'purpose', 'time_slot')
    """

    def __init__(self):
        self._definitions: Dict[str, EntityDefinition] = {}

    def register(
        self,
        table: Table,
        conflict_scope: Sequence[str] = (),
        required_fields: Optional[Sequence[str]] = None,
    ) -> EntityDefinition:
        """
        Register an entity table.

        Args:
            table: Table the engine writes materialized rows to
            conflict_scope: Columns scoping overlap detection; empty means any
                overlapping row in the table conflicts
            required_fields: Override for the required column list (default:
                NOT NULL columns without a default)

        Returns:
            The registered definition

        Raises:
            ValueError: If the table lacks an ``id`` column or a scope column
        """
        if "id" not in table.columns:
            raise ValueError(f"Entity table '{table.name}' must have an 'id' column")
        for column in conflict_scope:
            if column not in table.columns:
                raise ValueError(
                    f"Conflict scope column '{column}' not found in '{table.name}'"
                )

        definition = EntityDefinition(
            name=table.name,
            table=table,
            conflict_scope=tuple(conflict_scope),
            required_fields=tuple(required_fields) if required_fields is not None
            else _derive_required(table),
        )
        self._definitions[table.name] = definition
        logger.info(
            f"Registered entity table {table.name}",
            extra={"entity_table": table.name, "conflict_scope": list(conflict_scope)}
        )
        return definition

    def reflect(
        self,
        engine: Engine,
        table_names: Iterable[str],
        conflict_scopes: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> List[EntityDefinition]:
        """
        Register tables by reflecting them from the database.

        Args:
            engine: Engine to reflect with
            table_names: Tables to register
            conflict_scopes: Scope columns per table

        Returns:
            Registered definitions
        """
        scopes = conflict_scopes or {}
        metadata = MetaData()
        return [
            self.register(
                Table(name, metadata, autoload_with=engine),
                conflict_scope=scopes.get(name, ()),
            )
            for name in table_names
        ]

    def get(self, name: str) -> EntityDefinition:
        """
        Get a registered definition.

        Raises:
            ValidationError: If the table is not registered
        """
        definition = self._definitions.get(name)
        if definition is None:
            raise ValidationError(
                f"Entity table '{name}' is not registered for recurring series",
                field="entity_table"
            )
        return definition

    def __contains__(self, name: str) -> bool:
        return name in self._definitions

    def names(self) -> List[str]:
        return sorted(self._definitions)


def validate_template(
    definition: EntityDefinition,
    template: Mapping[str, object],
    time_slot_field: str,
) -> None:
    """
    Check a template against a registered table.

    The time-slot field is computed per occurrence, so it is neither
    required in nor accepted from the template.

    Args:
        definition: Target entity definition
        template: Template values
        time_slot_field: Column receiving the computed slot

    Raises:
        ValidationError: On protected, unknown or missing fields
    """
    if not definition.has_field(time_slot_field):
        raise ValidationError(
            f"Time slot field '{time_slot_field}' not found in '{definition.name}'",
            field="time_slot_field"
        )

    for key in template:
        if key == time_slot_field:
            continue
        if key in PROTECTED_FIELDS:
            raise ValidationError(
                f"Field '{key}' cannot be set in a template", field="entity_template"
            )
        if key not in definition.editable_fields:
            raise ValidationError(
                f"Field '{key}' does not exist in '{definition.name}'", field="entity_template"
            )

    missing = [
        name for name in definition.required_fields
        if name != time_slot_field and template.get(name) is None
    ]
    if missing:
        raise ValidationError(
            f"Template is missing required fields: {', '.join(missing)}",
            field="entity_template"
        )


def check_template_drift(
    db: Session,
    definition: EntityDefinition,
    template: Mapping[str, object],
    time_slot_field: str,
) -> List[Dict[str, str]]:
    """
    Compare a stored template with the live database schema.

    Args:
        db: Session whose connection is inspected
        definition: Entity definition the template was validated against
        template: Stored template values
        time_slot_field: Column receiving the computed slot

    Returns:
        Issues as ``{"field": ..., "issue": ...}``; empty when the template
        still fits
    """
    inspector = inspect(db.connection())
    columns = inspector.get_columns(definition.name)
    primary_keys = set(inspector.get_pk_constraint(definition.name).get("constrained_columns") or [])

    live_names = {c["name"] for c in columns}
    issues = []

    for column in columns:
        name = column["name"]
        if (
            name in primary_keys
            or name in PROTECTED_FIELDS
            or name == time_slot_field
            or column.get("nullable", True)
            or column.get("default") is not None
            or column.get("autoincrement") is True
        ):
            continue
        if template.get(name) is None:
            issues.append({"field": name, "issue": ISSUE_MISSING_REQUIRED})

    for key in template:
        if key not in live_names:
            issues.append({"field": key, "issue": ISSUE_FIELD_REMOVED})

    if time_slot_field not in live_names:
        issues.append({"field": time_slot_field, "issue": ISSUE_FIELD_REMOVED})

    return issues

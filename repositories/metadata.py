"""
repositories/metadata.py
------------------------
Maps an entity dataclass to its table: table name, key field and columns.

Entities declare their mapping in the class body:

    @dataclass
    class UserAccount:
        name: str
        id: Optional[int] = key_field(default=None)

The key is the field created with `key_field()`, or else a field called
`id` (any case). Table and column names are the snake_case form of the
class and field names; `__tablename__` overrides the table name.
"""

import dataclasses
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import Any, Mapping, Sequence

from inflection import underscore

from db.exceptions import DatabaseConfigurationError

KEY_MARKER = "primary_key"


def key_field(**kwargs: Any) -> Any:
    """`dataclasses.field()` that also marks the field as the entity's key."""
    metadata = dict(kwargs.pop("metadata", None) or {})
    metadata[KEY_MARKER] = True
    return dataclasses.field(metadata=metadata, **kwargs)


def to_snake_case(name: str) -> str:
    """`UserAccount` -> `user_account`."""
    return underscore(name)


@dataclass(frozen=True)
class EntityMetadata:
    """Immutable description of how one entity type is stored."""
    entity_type: type
    table_name: str
    key_property_name: str
    property_map: Mapping[str, dataclasses.Field]
    entity_properties: tuple
    column_map: Mapping[str, str]

    @property
    def entity_name(self) -> str:
        return self.entity_type.__name__

    @property
    def key_column(self) -> str:
        return self.column_map[self.key_property_name]

    @property
    def insertable_properties(self) -> tuple:
        """Every persistable field except the key, in declaration order."""
        return tuple(p for p in self.entity_properties if p != self.key_property_name)

    def column(self, property_name: str) -> str:
        return self.column_map[property_name]

    def key_value(self, entity: Any) -> int:
        """
        Integer key of ``entity``.

        Raises:
            ValueError: If the key is not set.
        """
        value = getattr(entity, self.key_property_name)
        if value is None:
            raise ValueError(f"Primary key value of {self.entity_name} cannot be None")
        return int(value)

    def values(self, entity: Any, properties: Sequence[str]) -> list:
        return [getattr(entity, p) for p in properties]

    def to_entity(self, columns: Sequence[str], row: Sequence[Any]) -> Any:
        """
        Build an entity from a result row.

        Columns that do not belong to the entity are ignored; fields declared
        with ``init=False`` are assigned after construction.
        """
        by_column = {c: p for p, c in self.column_map.items()}
        init_values = {}
        late_values = {}
        for column, value in zip(columns, row):
            prop = by_column.get(column)
            if prop is None:
                continue
            if self.property_map[prop].init:
                init_values[prop] = value
            else:
                late_values[prop] = value
        entity = self.entity_type(**init_values)
        for prop, value in late_values.items():
            setattr(entity, prop, value)
        return entity


def _find_key_property(entity_type: type, fields: Sequence[dataclasses.Field]) -> str:
    marked = [f.name for f in fields if f.metadata.get(KEY_MARKER)]
    if len(marked) > 1:
        raise DatabaseConfigurationError(
            f"Entity {entity_type.__name__} marks more than one key field: {', '.join(marked)}"
        )
    if marked:
        return marked[0]

    for f in fields:
        if f.name.lower() == "id":
            return f.name

    raise DatabaseConfigurationError(
        f"No primary key found for entity {entity_type.__name__}. "
        "Declare the key with key_field() or name the key field 'id'."
    )


@lru_cache(maxsize=None)
def resolve_metadata(entity_type: type) -> EntityMetadata:
    """
    Describe how ``entity_type`` maps to its table. Computed once per type.

    Raises:
        DatabaseConfigurationError: If the type is not a dataclass or has no
            resolvable key field.
    """
    if not (isinstance(entity_type, type) and dataclasses.is_dataclass(entity_type)):
        raise DatabaseConfigurationError(
            f"{entity_type!r} is not a dataclass and cannot be mapped to a table"
        )

    fields = [f for f in dataclasses.fields(entity_type) if not f.name.startswith("_")]
    key_property_name = _find_key_property(entity_type, fields)
    table_name = getattr(entity_type, "__tablename__", None) or to_snake_case(entity_type.__name__)

    return EntityMetadata(
        entity_type=entity_type,
        table_name=table_name,
        key_property_name=key_property_name,
        property_map=MappingProxyType({f.name: f for f in fields}),
        entity_properties=tuple(f.name for f in fields),
        column_map=MappingProxyType({f.name: to_snake_case(f.name) for f in fields}),
    )

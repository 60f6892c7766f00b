from __future__ import annotations

import typing
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class is not meant to hit the database
    at runtime for schema work.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Explicit primary key field
    primary_key: ClassVar[Optional[str]] = "id"

    # Fields that need a unique index in addition to the primary key
    unique_fields: ClassVar[Tuple[str, ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enums are stored by value so every backend sees plain strings.
        """
        return self.model_dump(by_alias=True, exclude_none=True, mode="python")

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            annotation, nullable = cls._unwrap_optional(field.annotation)
            properties[name] = {
                "type": cls._map_type(annotation),
                "nullable": nullable or not field.is_required(),
                "default": cls._schema_default(field.default),
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "unique": list(cls.unique_fields),
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _unwrap_optional(annotation: Any) -> Tuple[Any, bool]:
        args = typing.get_args(annotation)
        if args and type(None) in args:
            rest = [a for a in args if a is not type(None)]
            if len(rest) == 1:
                return rest[0], True
        return annotation, False

    @staticmethod
    def _schema_default(default: Any) -> Any:
        if isinstance(default, Enum):
            return default.value
        if isinstance(default, (str, int, float, bool)):
            return default
        return None

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        origin: Any = typing.get_origin(annotation)
        if origin in (list, tuple, set):
            return "array"
        if origin is dict or annotation is dict:
            return "object"

        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string"
        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"

        # Fallback for datetime and friends; generator refines by name
        name = getattr(annotation, "__name__", "object")
        return name.lower()


def utcnow() -> datetime:
    """Naive UTC now, truncated to milliseconds so values survive BSON round trips."""
    now = datetime.utcnow()
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)

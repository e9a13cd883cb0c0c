from __future__ import annotations

from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model for documents stored in the credit metering store.

    - Serializes itself using the stored (aliased) field names, e.g. ``UserId``
      and ``Credits``, while Python code uses snake_case attributes.
    - Describes its own logical schema, including the secondary indexes that
      the ledger and activity queries rely on, for the offline schema generator.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    # Logical collection / kind name; subclasses should override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    # Secondary indexes as tuples of (stored field, direction); 1 asc, -1 desc
    indexes: ClassVar[Tuple[Tuple[Tuple[str, int], ...], ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for persistence, keyed by stored field names.
        """
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            stored = field.alias or name
            properties[stored] = {
                "type": cls._map_type(field.annotation),
                "nullable": not field.is_required(),
                "default": cls._plain_default(field.default),
                "description": field.description,
            }
            if field.is_required():
                required.append(stored)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [
                [{"field": f, "direction": d} for f, d in index] for index in cls.indexes
            ],
        }

    @staticmethod
    def _plain_default(default: Any) -> Any:
        if default is None or isinstance(default, (int, float, bool, str)):
            return default
        # Enum members and factories are rendered by value / omitted
        return getattr(default, "value", None)

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        """
        args = getattr(annotation, "__args__", None)
        if args and type(None) in args:
            # Optional[X] -> X
            non_null = [a for a in args if a is not type(None)]
            if len(non_null) == 1:
                annotation = non_null[0]

        origin: Any = getattr(annotation, "__origin__", None)
        if origin in (list, tuple, set):
            return "array"
        if origin is dict:
            return "object"

        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"

        if isinstance(annotation, type) and issubclass(annotation, str):
            # str-based enums
            return "string"

        name = getattr(annotation, "__name__", "object")
        return name.lower()

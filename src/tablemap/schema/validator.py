from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError, create_model

from tablemap.common.errors import SchemaValidationError
from .fields import SchemaField


def _model_name(table: str) -> str:
    return "".join(part.capitalize() for part in table.replace("-", "_").split("_")) + "Record"


class RecordSchema:
    """Validates and coerces records against a table's field mapping.

    A pydantic model is generated per validated field subset (the full schema
    for inserts, the supplied keys for partial updates) and cached.
    """

    def __init__(self, table: str, fields: Mapping[str, SchemaField]):
        self.table = table
        self.fields: Dict[str, SchemaField] = dict(fields)
        self._models: Dict[FrozenSet[str], Type[BaseModel]] = {}

    def _model(self, names: FrozenSet[str]) -> Type[BaseModel]:
        model = self._models.get(names)
        if model is None:
            definitions = {
                f"f{position}": self.fields[name].to_pydantic(alias=name)
                for position, name in enumerate(sorted(names))
            }
            model = create_model(
                _model_name(self.table),
                __config__=ConfigDict(extra="forbid", arbitrary_types_allowed=True),
                **definitions,
            )
            self._models[names] = model
        return model

    def attempt(self, record: Any, fields: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        """Returns a coerced copy of ``record`` or raises SchemaValidationError.

        Args:
            record: The record to validate.
            fields: Restrict validation to these field names. Keys of the
                record outside the subset are rejected as unknown.

        Returns:
            Dict[str, Any]: The coerced record with declared defaults applied.
        """
        if fields is None:
            names = frozenset(self.fields)
        else:
            names = frozenset(name for name in fields if name in self.fields)
        try:
            instance = self._model(names).model_validate(record)
        except ValidationError as exc:
            errors = _describe(exc)
            summary = "; ".join(f"{e['field']}: {e['reason']}" for e in errors)
            raise SchemaValidationError(
                f"Record for table '{self.table}' failed validation: {summary}", errors
            ) from exc

        data = instance.model_dump(by_alias=True, exclude_unset=True)
        for name in names:
            if name not in data and self.fields[name].has_default():
                data[name] = self.fields[name].get_default()
        return data

    def validate(self, record: Any) -> bool:
        try:
            self.attempt(record)
        except SchemaValidationError:
            return False
        return True


def _describe(exc: ValidationError) -> List[Dict[str, Any]]:
    return [
        {
            "field": ".".join(str(part) for part in error["loc"]) or "<record>",
            "reason": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class IndexDefinition(BaseModel):
    """A secondary index over one field (simple) or several (compound)."""

    name: str = Field(..., min_length=1)
    fields: List[str] = Field(..., min_length=1)
    multi: bool = Field(
        default=False, description="Index every element of an array value."
    )

    model_config = ConfigDict(extra="forbid", frozen=True)

    @property
    def is_compound(self) -> bool:
        return len(self.fields) > 1

    def keys(self, doc: dict) -> List[Any]:
        """Returns the index keys a document is reachable under."""
        if self.is_compound:
            if any(doc.get(name) is None for name in self.fields):
                return []
            return [[doc[name] for name in self.fields]]
        value = doc.get(self.fields[0])
        if value is None:
            return []
        if self.multi and isinstance(value, list):
            return list(value)
        return [value]

    def matches(self, doc: dict, value: Any) -> bool:
        if isinstance(value, tuple):
            value = list(value)
        return any(key == value for key in self.keys(doc))

    @classmethod
    def from_declaration(cls, name: str, declaration: Any) -> Optional["IndexDefinition"]:
        """Normalizes an explicit index declaration.

        ``True`` indexes the field called ``name``; a string names another
        field; a list declares a compound index; a dict or IndexDefinition is
        taken as is. ``False`` disables the declaration.
        """
        if declaration is False:
            return None
        if declaration is True:
            return cls(name=name, fields=[name])
        if isinstance(declaration, str):
            return cls(name=name, fields=[declaration])
        if isinstance(declaration, (list, tuple)):
            return cls(name=name, fields=list(declaration))
        if isinstance(declaration, IndexDefinition):
            return declaration.model_copy(update={"name": name})
        return cls.model_validate({**dict(declaration), "name": name})

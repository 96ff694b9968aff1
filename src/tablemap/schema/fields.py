import copy
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import Field
from pydantic.fields import FieldInfo

_MISSING = object()


class SchemaField:
    """Validator for a single record attribute.

    Wraps a type annotation plus pydantic constraints, and carries meta flags
    (``index``, ``unique``) that drive index provisioning and write-time
    uniqueness checks. Builder methods return modified copies; a field is
    never mutated after creation.
    """

    def __init__(
        self,
        annotation: Any = Any,
        *,
        required: Optional[bool] = None,
        nullable: bool = False,
        default: Any = _MISSING,
        default_factory: Optional[Callable[[], Any]] = None,
        description: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        **constraints: Any,
    ):
        if required is None:
            required = default is _MISSING and default_factory is None
        self.annotation = annotation
        self.description = description
        self.constraints = constraints
        self._required = required
        self._nullable = nullable
        self._default = default
        self._default_factory = default_factory
        self._meta = dict(meta or {})

    def __repr__(self) -> str:
        name = getattr(self.annotation, "__name__", repr(self.annotation))
        flags = ["required" if self._required else "optional"]
        if self._nullable:
            flags.append("nullable")
        flags += sorted(key for key, value in self._meta.items() if value)
        return f"SchemaField({name}, {', '.join(flags)})"

    def _copy(self, **changes: Any) -> "SchemaField":
        clone = copy.copy(self)
        clone.constraints = dict(self.constraints)
        clone._meta = dict(self._meta)
        for key, value in changes.items():
            setattr(clone, key, value)
        return clone

    # -- builders ----------------------------------------------------------

    def required(self) -> "SchemaField":
        return self._copy(_required=True)

    def optional(self) -> "SchemaField":
        return self._copy(_required=False)

    def nullable(self, flag: bool = True) -> "SchemaField":
        return self._copy(_nullable=flag)

    def with_default(self, value: Any) -> "SchemaField":
        if callable(value):
            return self._copy(_default=_MISSING, _default_factory=value)
        return self._copy(_default=value, _default_factory=None)

    def meta(self, **flags: Any) -> "SchemaField":
        clone = self._copy()
        clone._meta.update(flags)
        return clone

    def without_meta(self, *names: str) -> "SchemaField":
        clone = self._copy()
        for name in names:
            clone._meta.pop(name, None)
        return clone

    def indexed(self) -> "SchemaField":
        return self.meta(index=True)

    def unique(self) -> "SchemaField":
        return self.meta(unique=True)

    # -- capability queries ------------------------------------------------

    def is_required(self) -> bool:
        return self._required

    def is_nullable(self) -> bool:
        return self._nullable

    def has_default(self) -> bool:
        return self._default is not _MISSING or self._default_factory is not None

    def get_default(self) -> Any:
        if self._default_factory is not None:
            return self._default_factory()
        if self._default is _MISSING:
            return None
        return copy.deepcopy(self._default)

    def has_meta_flag(self, name: str) -> bool:
        return bool(self._meta.get(name))

    def is_indexed(self) -> bool:
        return self.has_meta_flag("index")

    def is_unique(self) -> bool:
        return self.has_meta_flag("unique")

    def to_pydantic(self, alias: str) -> Tuple[Any, FieldInfo]:
        """Returns the ``(annotation, FieldInfo)`` pair used by ``create_model``."""
        annotation = Optional[self.annotation] if self._nullable else self.annotation
        kwargs = dict(self.constraints, alias=alias, description=self.description)
        if self._required:
            return annotation, Field(..., **kwargs)
        if self._default_factory is not None:
            return annotation, Field(default_factory=self._default_factory, **kwargs)
        default = None if self._default is _MISSING else self._default
        return annotation, Field(default=default, **kwargs)


def field(
    annotation: Any = Any,
    *,
    index: bool = False,
    unique: bool = False,
    **kwargs: Any,
) -> SchemaField:
    """Declares a schema field.

    Args:
        annotation: Type the value is validated and coerced against.
        index: Provision a secondary index for this field.
        unique: Enforce uniqueness on write (implies an index).
        **kwargs: ``required``, ``nullable``, ``default``, ``default_factory``,
            ``description`` and any pydantic constraint (``min_length``,
            ``ge``, ``pattern``...).

    Returns:
        SchemaField: The field descriptor.
    """
    meta = {}
    if index:
        meta["index"] = True
    if unique:
        meta["unique"] = True
    return SchemaField(annotation, meta=meta, **kwargs)

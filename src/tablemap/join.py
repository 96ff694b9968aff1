from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from tablemap.common.errors import ConfigurationError
from tablemap.common.settings import settings


class JoinSpec(BaseModel):
    """Which relations to resolve and merge, with per-relation query options.

    ``relations`` maps relation names to nested specs applied on the target
    table; ``options`` are query options for the lookup of the relation this
    spec is attached to.
    """

    relations: Dict[str, "JoinSpec"] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def parse(cls, value: Any, option_prefix: Optional[str] = None) -> "JoinSpec":
        """Builds a spec from a JoinSpec, ``True``/``None`` or a nested mapping.

        In mappings, keys starting with ``option_prefix`` (default
        ``settings.join_option_prefix``) are options with the prefix stripped;
        ``False`` values are skipped; every other key is a nested relation.
        """
        if isinstance(value, JoinSpec):
            return value
        if value is None or value is True:
            return cls()
        if not isinstance(value, Mapping):
            raise ConfigurationError(f"Invalid join specification: {value!r}")

        prefix = settings.join_option_prefix if option_prefix is None else option_prefix
        relations: Dict[str, JoinSpec] = {}
        options: Dict[str, Any] = {}
        for key, item in value.items():
            if key.startswith(prefix):
                options[key[len(prefix):]] = item
            elif item is not False:
                relations[key] = cls.parse(item, prefix)
        return cls(relations=relations, options=options)

    def nested(self) -> "JoinSpec":
        """The nested relations of this spec without its own options."""
        return JoinSpec(relations=self.relations)


JoinSpec.model_rebuild()

"""
Entity templates and merge patches.

A series stores a template: the field values copied into every entity row
it materializes. Templates change through patches. Merging is a shallow
override: keys present in the patch replace the template's values
(including explicit None), keys absent from the patch are carried forward.
A patch therefore can never drop a field by omission.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Mapping, Optional


@dataclass(frozen=True)
class TemplatePatch:
    """Partial set of template values to override."""

    values: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, values: Optional[Mapping[str, Any]]) -> "TemplatePatch":
        return cls(dict(values or {}))

    def __bool__(self) -> bool:
        return bool(self.values)


@dataclass(frozen=True)
class EntityTemplate:
    """Full set of field values for materialized entity rows."""

    values: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, values: Optional[Mapping[str, Any]]) -> "EntityTemplate":
        return cls(dict(values or {}))

    def merge(self, patch: TemplatePatch) -> "EntityTemplate":
        """
        Apply a patch.

        Args:
            patch: Values to override

        Returns:
            New template with the union of keys, patch values winning
        """
        merged = dict(self.values)
        merged.update(patch.values)
        return EntityTemplate(merged)

    def without(self, *keys: str) -> "EntityTemplate":
        """Return a copy with the given keys removed."""
        return EntityTemplate({k: v for k, v in self.values.items() if k not in keys})

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.values)

    def __contains__(self, key: str) -> bool:
        return key in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

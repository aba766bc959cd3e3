"""Build configuration models: the variant matrix and its resolved form."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from layerforge.core.hasher import content_address

# Explicit value for an optional parameter that is switched off.  Present in
# the resolved configuration and in the runtime environment, never omitted.
DISABLED = ""

ParamType = Literal["bool", "int", "str"]


class ParameterSpec(BaseModel):
    """Declaration of one named build parameter."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: ParamType = "str"
    default: bool | int | str | None = None
    required: bool = False
    optional: bool = False  # may resolve to DISABLED
    choices: list[str] = []
    description: str = ""


class VariantMatrix(BaseModel):
    """Declared parameters plus named override profiles."""

    model_config = ConfigDict(frozen=True)

    parameters: list[ParameterSpec]
    profiles: dict[str, dict[str, Any]] = {}

    def get(self, name: str) -> ParameterSpec | None:
        for spec in self.parameters:
            if spec.name == name:
                return spec
        return None

    @property
    def names(self) -> list[str]:
        return [spec.name for spec in self.parameters]


class BuildConfiguration(BaseModel):
    """Fully resolved, immutable build parameters for one build.

    Every declared parameter has a concrete value.  Stages read the subset
    they declare via ``subset()``; ``values`` is a read-only view, so nothing
    mutates a resolved configuration.
    """

    model_config = ConfigDict(frozen=True)

    values: Mapping[str, bool | int | str]
    profile: str = ""
    sources: Mapping[str, str] = Field(default_factory=dict)

    @field_validator("values", "sources", mode="after")
    @classmethod
    def _read_only(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return MappingProxyType(dict(value))

    @field_serializer("values", "sources")
    def _plain_dict(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return dict(value)

    def __getitem__(self, name: str) -> bool | int | str:
        return self.values[name]

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def is_disabled(self, name: str) -> bool:
        """Whether an optional parameter resolved to the disabled sentinel."""
        return self.values.get(name) == DISABLED

    def missing(self, names: Iterable[str]) -> list[str]:
        """Declared *names* this configuration has no value for."""
        return sorted(set(names) - set(self.values))

    def subset(self, names: list[str] | tuple[str, ...]) -> dict[str, bool | int | str]:
        """Return the values for *names*, in sorted order."""
        return {name: self.values[name] for name in sorted(names)}

    def fingerprint(self) -> str:
        return content_address(dict(self.values))

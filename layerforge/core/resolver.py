"""Configuration resolver: variant matrix + overrides -> BuildConfiguration.

Resolution order is defaults, then the selected profile, then caller
overrides.  Every declared parameter ends with a concrete value; optional
parameters that are unset or empty resolve to the explicit ``DISABLED``
sentinel so downstream stages branch on a value rather than on absence.
"""

from __future__ import annotations

import logging
import re
import tomllib
from pathlib import Path
from typing import Any

from layerforge.errors import ConfigurationError
from layerforge.models.config import (
    DISABLED,
    BuildConfiguration,
    ParameterSpec,
    VariantMatrix,
)

logger = logging.getLogger(__name__)

# Secrets are supplied at deploy time and never become build parameters.
_SECRET_NAME_RE = re.compile(
    r"(^|_)(secret|token|password|passwd|credentials?|apikey|key)(_|$)", re.I
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

# Parameters whose values must identify a non-privileged account.
_IDENTITY_PARAMS = ("uid", "gid")


def default_matrix() -> VariantMatrix:
    """The built-in variant matrix and its two deployment profiles."""
    return VariantMatrix(
        parameters=[
            ParameterSpec(name="use_cuda", type="bool", default=False,
                          description="Install accelerator (CUDA) builds of ML libraries."),
            ParameterSpec(name="cuda_version", type="str", default="cu128",
                          description="CUDA wheel tag used when use_cuda is set."),
            ParameterSpec(name="use_ollama", type="bool", default=False,
                          description="Bundle the external inference runtime."),
            ParameterSpec(name="ollama_base_url", type="str",
                          default="http://host.docker.internal:11434",
                          description="Inference runtime URL when it is not bundled."),
            ParameterSpec(name="embedding_model", type="str",
                          default="sentence-transformers/all-MiniLM-L6-v2", required=True,
                          description="Embedding model identifier."),
            ParameterSpec(name="reranking_model", type="str", default=DISABLED, optional=True,
                          description="Reranking model identifier, empty to disable."),
            ParameterSpec(name="whisper_model", type="str", default="base", optional=True,
                          description="Speech-transcription model, empty to disable."),
            ParameterSpec(name="tiktoken_encoding", type="str", default="cl100k_base",
                          required=True, description="Tokenizer encoding identifier."),
            ParameterSpec(name="uid", type="int", default=1000,
                          description="Numeric runtime user id."),
            ParameterSpec(name="gid", type="int", default=1000,
                          description="Numeric runtime group id."),
            ParameterSpec(name="build_hash", type="str", default="dev-build",
                          description="Build revision tag."),
            ParameterSpec(name="backend_flavor", type="str", default="environment",
                          choices=["environment", "single-binary"],
                          description="Ship a relocatable environment or one executable."),
            ParameterSpec(name="base_flavor", type="str", default="debian-slim",
                          choices=["debian-slim", "alpine"],
                          description="Base runtime flavor."),
            ParameterSpec(name="port", type="int", default=8080,
                          description="Listening port."),
            ParameterSpec(name="thread_count", type="int", default=4,
                          description="Threads for numeric libraries (OMP/MKL)."),
        ],
        profiles={
            "standard": {"backend_flavor": "environment"},
            "single-binary": {"backend_flavor": "single-binary", "base_flavor": "debian-slim"},
        },
    )


def load_variant_matrix(path: Path) -> VariantMatrix:
    """Load a variant matrix from TOML.

    Expected layout::

        [parameters.embedding_model]
        type = "str"
        default = "sentence-transformers/all-MiniLM-L6-v2"
        required = true

        [profiles.gpu]
        use_cuda = true
    """
    try:
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"Cannot read variant matrix {path}: {exc}") from exc

    raw_params = data.get("parameters", {})
    if not isinstance(raw_params, dict) or not raw_params:
        raise ConfigurationError(f"Variant matrix {path} declares no [parameters]")

    specs: list[ParameterSpec] = []
    for name, body in raw_params.items():
        if not isinstance(body, dict):
            raise ConfigurationError(f"Parameter {name!r} must be a table")
        try:
            specs.append(ParameterSpec(name=name, **body))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid declaration for {name!r}: {exc}") from exc

    profiles = data.get("profiles", {})
    if not isinstance(profiles, dict):
        raise ConfigurationError("[profiles] must be a table of tables")
    return VariantMatrix(parameters=specs, profiles=profiles)


def coerce_value(spec: ParameterSpec, raw: Any) -> bool | int | str:
    """Convert *raw* to the declared type of *spec*.

    Accepts native values and the string forms produced by env vars and
    ``--set name=value`` flags.
    """
    if spec.type == "bool":
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigurationError(
            f"Parameter {spec.name!r} expects a boolean, got {raw!r}"
        )
    if spec.type == "int":
        if isinstance(raw, bool):
            raise ConfigurationError(
                f"Parameter {spec.name!r} expects an integer, got {raw!r}"
            )
        if isinstance(raw, int):
            return raw
        text = str(raw).strip()
        if not re.fullmatch(r"[+-]?\d+", text):
            raise ConfigurationError(
                f"Parameter {spec.name!r} expects an integer, got {raw!r}"
            )
        return int(text)
    return "" if raw is None else str(raw).strip()


def _validate(spec: ParameterSpec, value: bool | int | str) -> bool | int | str:
    if spec.type == "str" and value == DISABLED:
        if spec.required or not spec.optional:
            raise ConfigurationError(f"Required parameter {spec.name!r} is empty")
        return DISABLED
    if spec.choices and str(value) not in spec.choices:
        raise ConfigurationError(
            f"Parameter {spec.name!r}={value!r} is not one of {spec.choices}"
        )
    if spec.name in _IDENTITY_PARAMS and isinstance(value, int) and value <= 0:
        raise ConfigurationError(
            f"Parameter {spec.name!r} must be a non-privileged id (> 0), got {value}"
        )
    return value


def resolve(
    matrix: VariantMatrix | None = None,
    overrides: dict[str, Any] | None = None,
    *,
    profile: str | None = None,
) -> BuildConfiguration:
    """Resolve *matrix* with *profile* and *overrides* into a configuration.

    Raises
    ------
    ConfigurationError
        On unknown parameters or profiles, secret-like parameter names,
        missing required values, failed type coercion, values outside
        declared choices, or privileged identity ids.
    """
    matrix = matrix or default_matrix()
    overrides = dict(overrides or {})

    for spec in matrix.parameters:
        if _SECRET_NAME_RE.search(spec.name):
            raise ConfigurationError(
                f"Parameter {spec.name!r} looks like a secret; secrets are "
                "provided at deploy time and are never build parameters"
            )

    layers: list[tuple[str, dict[str, Any]]] = []
    if profile:
        if profile not in matrix.profiles:
            raise ConfigurationError(
                f"Unknown profile {profile!r}. Known: {sorted(matrix.profiles)}"
            )
        layers.append((f"profile:{profile}", dict(matrix.profiles[profile])))
    layers.append(("override", overrides))

    known = set(matrix.names)
    for origin, layer in layers:
        unknown = sorted(set(layer) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown parameter(s) from {origin}: {', '.join(unknown)}"
            )

    values: dict[str, bool | int | str] = {}
    sources: dict[str, str] = {}
    for spec in matrix.parameters:
        raw: Any = spec.default
        origin = "default"
        for layer_origin, layer in layers:
            if spec.name in layer:
                raw, origin = layer[spec.name], layer_origin

        if raw is None:
            if spec.optional and spec.type == "str":
                raw = DISABLED
            else:
                raise ConfigurationError(
                    f"Required parameter {spec.name!r} has no value"
                )

        values[spec.name] = _validate(spec, coerce_value(spec, raw))
        sources[spec.name] = origin

    config = BuildConfiguration(values=values, profile=profile or "", sources=sources)
    logger.debug("Resolved build configuration %s", config.fingerprint())
    return config


def parse_assignments(pairs: list[str]) -> dict[str, str]:
    """Parse ``name=value`` strings (from ``--set``) into raw overrides."""
    result: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise ConfigurationError(f"Expected name=value, got {pair!r}")
        result[name.strip().lower()] = value
    return result

"""Error taxonomy for layerforge builds.

Every fatal condition aborts the whole build.  ``StageError`` and its
subclasses carry the originating stage name and captured diagnostics so the
operator can see which stage failed and why.
"""

from __future__ import annotations


class LayerforgeError(RuntimeError):
    """Base class for all layerforge errors."""


class ConfigurationError(LayerforgeError, ValueError):
    """Raised when a build parameter is missing, unknown, or malformed.

    Always raised before any stage executes.
    """


class StageError(LayerforgeError):
    """Raised when a stage's execution fails.

    Parameters
    ----------
    message:
        Human-readable failure description.
    stage:
        Name of the failing stage.  The engine fills this in when a stage
        raises without naming itself.
    diagnostics:
        Captured tool output (stderr/stdout tail) for the operator.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str = "",
        diagnostics: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        prefix = f"[{self.stage}] " if self.stage else ""
        return f"{prefix}{self.message}"


class ModelFetchError(StageError):
    """Raised when a model cannot be fetched or fails its integrity check."""

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        identifier: str,
        stage: str = "",
        diagnostics: str = "",
    ) -> None:
        super().__init__(message, stage=stage, diagnostics=diagnostics)
        self.kind = kind
        self.identifier = identifier


class PackagingError(StageError):
    """Raised when a single-binary build fails or its smoke test fails."""

    def __init__(
        self,
        message: str,
        *,
        missing_module: str = "",
        stage: str = "",
        diagnostics: str = "",
    ) -> None:
        super().__init__(message, stage=stage, diagnostics=diagnostics)
        self.missing_module = missing_module


class AssemblyError(StageError):
    """Raised when the assembled tree violates ownership or content rules."""

    def __init__(
        self,
        message: str,
        *,
        violations: list[str] | None = None,
        stage: str = "",
        diagnostics: str = "",
    ) -> None:
        super().__init__(message, stage=stage, diagnostics=diagnostics)
        self.violations = list(violations or [])


class ArtifactIntegrityError(LayerforgeError):
    """Raised when stored content does not match its recorded digest."""

"""Layerforge: staged, cached builds of a self-contained application runtime.

Turns a frontend project, a Python backend and a set of pre-fetched ML
models into one runtime filesystem tree:
  - Parameterized builds resolved from a typed variant matrix
  - Content-addressed stage artifacts with cache reuse
  - Parallel stage execution with cancellation and timeouts
  - Shared, verified model cache with retrying fetchers
  - Optional single-binary backend packaging with a smoke test
  - Non-root runtime identity with audited ownership and permissions
"""

__version__ = "0.1.0"
__description__ = "Staged, cached builds of a self-contained application runtime"

from layerforge.core.orchestrator import BuildOrchestrator

__all__ = ["BuildOrchestrator", "__version__"]

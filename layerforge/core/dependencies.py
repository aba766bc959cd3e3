"""Backend dependency-set selection and post-install verification.

``select_dependency_set`` is a pure function of the build configuration: it
decides which accelerator builds, wheel index and runtime packages a build
needs without touching the network.  ``find_forbidden`` checks an installed
package set against that selection so a CPU-only profile can never ship a
GPU build of an accelerator-capable library.
"""

from __future__ import annotations

import fnmatch
import re
import sys
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from layerforge.errors import ConfigurationError
from layerforge.models.config import BuildConfiguration
from layerforge.models.dependencies import DependencySet

TORCH_INDEX = "https://download.pytorch.org/whl/{tag}"

ACCELERATOR_PACKAGES: list[str] = ["torch", "torchvision", "torchaudio"]

# Distributions that only exist to back GPU builds.
GPU_ONLY_DISTRIBUTIONS: list[str] = ["nvidia-*", "triton", "pytorch-triton", "cupy-*"]

# Local version suffixes that mark GPU wheels (e.g. ``2.9.1+cu128``).
GPU_LOCAL_VERSIONS: list[str] = ["cu*", "rocm*"]

_BASE_SYSTEM_PACKAGES: dict[str, list[str]] = {
    "debian-slim": ["ca-certificates", "curl", "ffmpeg", "libgomp1", "libopenblas0", "libsm6", "libxext6", "tini"],
    "alpine": ["ca-certificates", "curl", "ffmpeg", "libgomp", "openblas", "tini"],
}

# Accelerator wheels are manylinux builds and need a glibc base.
_GLIBC_FLAVORS = frozenset({"debian-slim"})

# The shipped site-packages is built by, and only importable from, this
# interpreter minor version.
RUNTIME_PYTHON = f"{sys.version_info.major}.{sys.version_info.minor}"

_DIST_INFO_RE = re.compile(r"^(?P<name>.+?)-(?P<version>[^-]+)\.dist-info$")


class InstalledDistribution(BaseModel):
    """A distribution found in an installed site-packages directory."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str

    @property
    def normalized(self) -> str:
        return normalize_name(self.name)

    @property
    def local_version(self) -> str:
        _, _, local = self.version.partition("+")
        return local


def normalize_name(name: str) -> str:
    """PEP 503 normalization."""
    return re.sub(r"[-_.]+", "-", name).lower()


def select_dependency_set(
    config: BuildConfiguration, python_version: str = RUNTIME_PYTHON
) -> DependencySet:
    """Map a configuration to its backend dependency selection.

    The environment flavor ships a bare ``site-packages`` tree, so its base
    also carries the interpreter that tree was installed for.  The
    single-binary flavor embeds its own interpreter.

    Raises
    ------
    ConfigurationError
        If the base flavor is unknown, or cannot run the selection (a musl
        base with the environment flavor or with accelerator wheels).
    """
    use_cuda = bool(config.get("use_cuda", False))
    tag = str(config.get("cuda_version", "cu128")) if use_cuda else "cpu"
    flavor = str(config.get("base_flavor", "debian-slim"))
    backend_flavor = str(config.get("backend_flavor", "environment"))
    accelerator_packages = list(ACCELERATOR_PACKAGES)

    if flavor not in _BASE_SYSTEM_PACKAGES:
        raise ConfigurationError(
            f"Unknown base flavor {flavor!r}. Known: {sorted(_BASE_SYSTEM_PACKAGES)}"
        )
    if flavor not in _GLIBC_FLAVORS:
        if backend_flavor == "environment":
            raise ConfigurationError(
                f"Base flavor {flavor!r} cannot run a relocatable environment "
                "built from manylinux wheels; use debian-slim"
            )
        if accelerator_packages:
            raise ConfigurationError(
                f"Base flavor {flavor!r} cannot load the glibc builds of "
                f"{', '.join(accelerator_packages)}; use debian-slim"
            )

    system_packages = list(_BASE_SYSTEM_PACKAGES[flavor])
    interpreter = ""
    if backend_flavor == "environment":
        interpreter = python_version
        system_packages.append(f"python{python_version}")

    return DependencySet(
        accelerator=tag,
        accelerator_packages=accelerator_packages,
        accelerator_index_url=TORCH_INDEX.format(tag=tag),
        forbidden_distributions=[] if use_cuda else list(GPU_ONLY_DISTRIBUTIONS),
        forbidden_local_versions=[] if use_cuda else list(GPU_LOCAL_VERSIONS),
        system_packages=system_packages,
        python_version=interpreter,
        bundled_runtime="ollama" if config.get("use_ollama", False) else "",
    )


def scan_site_packages(site_packages: Path) -> list[InstalledDistribution]:
    """List distributions installed in *site_packages* from their dist-info."""
    found: list[InstalledDistribution] = []
    if not site_packages.is_dir():
        return found
    for entry in sorted(site_packages.iterdir()):
        match = _DIST_INFO_RE.match(entry.name)
        if entry.is_dir() and match:
            found.append(
                InstalledDistribution(name=match["name"], version=match["version"])
            )
    return found


def find_forbidden(
    selection: DependencySet, installed: list[InstalledDistribution]
) -> list[str]:
    """Distributions in *installed* that violate *selection*'s profile."""
    violations: list[str] = []
    for dist in installed:
        if any(fnmatch.fnmatchcase(dist.normalized, p) for p in selection.forbidden_distributions):
            violations.append(f"{dist.name}=={dist.version} (GPU-only distribution)")
            continue
        local = dist.local_version
        if local and any(fnmatch.fnmatchcase(local, p) for p in selection.forbidden_local_versions):
            violations.append(f"{dist.name}=={dist.version} (GPU build)")
    return violations

"""Final filesystem layout and the runtime environment contract.

Everything the application sees at runtime is described here: where the
compiled frontend, backend and model caches live inside the assembled tree,
and which environment variables point the backend at them.  Paths are given
both relative to the rootfs (for assembly) and absolute (for the runtime).
"""

from __future__ import annotations

from pathlib import PurePosixPath

from layerforge.models.cache import ModelKind
from layerforge.models.config import DISABLED, BuildConfiguration

APP_ROOT = PurePosixPath("/app")

# Relative to the rootfs.
APP_DIR = "app"
FRONTEND_DIR = f"{APP_DIR}/build"
BACKEND_DIR = f"{APP_DIR}/backend"
SITE_PACKAGES_DIR = f"{BACKEND_DIR}/site-packages"
DATA_DIR = f"{BACKEND_DIR}/data"
CACHE_DIR = f"{DATA_DIR}/cache"
BINARY_PATH = f"{APP_DIR}/backend_app"
ENTRYPOINT_PATH = f"{APP_DIR}/start.sh"
VERSION_PATH = f"{APP_DIR}/VERSION"
PASSWD_PATH = "etc/passwd"
GROUP_PATH = "etc/group"

# Files the frontend artifact ships next to its assets.
FRONTEND_RELEASE_FILES: tuple[str, ...] = ("CHANGELOG.md", "package.json")

# Where each model kind is installed, relative to CACHE_DIR.  Embedding and
# reranking entries share one Hugging Face home: repositories are stored
# under distinct ``models--<org>--<name>`` directories so they never collide.
MODEL_RUNTIME_DIRS: dict[ModelKind, str] = {
    ModelKind.EMBEDDING: "embedding/models",
    ModelKind.RERANKING: "embedding/models",
    ModelKind.TOKENIZER: "tiktoken",
    ModelKind.SPEECH: "whisper/models",
}

WHISPER_COMPUTE_TYPE = "int8"

# URL under which a bundled inference runtime is proxied by the backend.
BUNDLED_OLLAMA_URL = "/ollama"


def runtime_path(relative: str) -> str:
    """Absolute in-image path for a rootfs-relative path under ``app/``."""
    return str(PurePosixPath("/") / relative)


def model_runtime_dir(kind: ModelKind) -> str:
    return f"{CACHE_DIR}/{MODEL_RUNTIME_DIRS[kind]}"


def _flag(value: object) -> str:
    return "true" if bool(value) else "false"


def runtime_environment(config: BuildConfiguration) -> dict[str, str]:
    """The environment the entry point is started with.

    Disabled optional models are exported as the disabled sentinel, never
    omitted.  ``WEBUI_SECRET_KEY`` is a placeholder: the real value is
    supplied at deploy time and never baked into the artifact.
    """
    use_ollama = bool(config.get("use_ollama", False))
    hf_home = runtime_path(model_runtime_dir(ModelKind.EMBEDDING))
    threads = str(config.get("thread_count", 4))

    env: dict[str, str] = {
        "ENV": "prod",
        "PORT": str(config.get("port", 8080)),
        "HOME": str(APP_ROOT),
        "USE_OLLAMA_DOCKER": _flag(use_ollama),
        "USE_CUDA_DOCKER": _flag(config.get("use_cuda", False)),
        "OLLAMA_BASE_URL": (
            BUNDLED_OLLAMA_URL if use_ollama else str(config.get("ollama_base_url", ""))
        ),
        # Telemetry opt-out
        "SCARF_NO_ANALYTICS": "true",
        "DO_NOT_TRACK": "true",
        "ANONYMIZED_TELEMETRY": "false",
        # Models
        "RAG_EMBEDDING_MODEL": str(config.get("embedding_model", DISABLED)),
        "RAG_RERANKING_MODEL": str(config.get("reranking_model", DISABLED)),
        "SENTENCE_TRANSFORMERS_HOME": hf_home,
        "HF_HOME": hf_home,
        "HF_HUB_OFFLINE": "1",
        "WHISPER_MODEL": str(config.get("whisper_model", DISABLED)),
        "WHISPER_MODEL_DIR": runtime_path(model_runtime_dir(ModelKind.SPEECH)),
        "WHISPER_COMPUTE_TYPE": WHISPER_COMPUTE_TYPE,
        "TIKTOKEN_ENCODING_NAME": str(config.get("tiktoken_encoding", DISABLED)),
        "TIKTOKEN_CACHE_DIR": runtime_path(model_runtime_dir(ModelKind.TOKENIZER)),
        # Numeric libraries
        "OMP_NUM_THREADS": threads,
        "MKL_NUM_THREADS": threads,
        # Deploy-time secret placeholder
        "WEBUI_SECRET_KEY": "",
    }
    if config.get("backend_flavor", "environment") == "environment":
        env["PYTHONPATH"] = ":".join(
            [runtime_path(SITE_PACKAGES_DIR), runtime_path(BACKEND_DIR)]
        )
    return env


def entrypoint_script(config: BuildConfiguration, backend_entry: str = "start.sh") -> str:
    """Contents of the single process entry point, ``/app/start.sh``."""
    backend = runtime_path(BACKEND_DIR)
    if config.get("backend_flavor", "environment") == "single-binary":
        command = f'exec {runtime_path(BINARY_PATH)} "$@"'
    else:
        command = f'exec {backend}/{backend_entry} "$@"'
    return "\n".join([
        "#!/bin/sh",
        "set -eu",
        f"cd {backend}",
        command,
        "",
    ])

"""
Configuration management for voxchain.

This module handles environment variables, API keys, provider endpoints and
engine defaults using python-dotenv for explicit, project-scoped .env loading.
No implicit loading occurs at import time.
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

TRUE_VALUES = ("true", "1", "yes", "on")


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing (provider settings, regex patterns)."""

    pass


@lru_cache(maxsize=32)
def load_config(env_path: Optional[str] = None, override: bool = False) -> None:
    """Explicitly load environment variables from the given .env file path.

    Does NOT perform implicit loading when env_path is None.
    """
    if env_path:
        load_dotenv(dotenv_path=env_path, override=override)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in TRUE_VALUES


class Config:
    """Configuration settings for voxchain."""

    @property
    def openai_api_key(self) -> str:
        """Get OpenAI API key from environment."""
        key = os.getenv("OPENAI_API_KEY")
        if not key:
            raise ConfigurationError("OPENAI_API_KEY not found in environment. Please set it in your environment or .env file.")
        return key

    @property
    def llm_model(self) -> str:
        """Default model for newly created prompt units (default: gpt-4o-mini)."""
        return os.getenv("LLM_MODEL", "gpt-4o-mini")

    @property
    def is_reasoning_model(self) -> bool:
        """Check if the configured models are reasoning models (default: False)."""
        return _env_flag("IS_REASONING_MODEL", "false")

    @property
    def model_temperature(self) -> float:
        """Sampling temperature for standard models (default: 0.7)."""
        try:
            temp = float(os.getenv("MODEL_TEMPERATURE", "0.7"))
        except ValueError:
            logger.warning("Invalid MODEL_TEMPERATURE format. Using 0.7 as default.")
            return 0.7
        if not (0.0 <= temp <= 2.0):
            logger.warning(f"Invalid MODEL_TEMPERATURE value: {temp}. Using 0.7 as default.")
            return 0.7
        return temp

    @property
    def max_tokens(self) -> int:
        """Completion token limit per call (default: 2000)."""
        return int(os.getenv("MAX_TOKENS", "2000"))

    @property
    def openai_timeout(self) -> int:
        """Get OpenAI API timeout in seconds (default: 60)."""
        return int(os.getenv("OPENAI_TIMEOUT", "60"))

    @property
    def max_retries(self) -> int:
        """Get maximum number of SDK-level retries for API calls (default: 3)."""
        return int(os.getenv("MAX_RETRIES", "3"))

    @property
    def openwebui_base_url(self) -> Optional[str]:
        """Base URL of an Open WebUI server exposing the OpenAI-compatible API."""
        return os.getenv("OPENWEBUI_BASE_URL") or None

    @property
    def openwebui_api_key(self) -> Optional[str]:
        return os.getenv("OPENWEBUI_API_KEY") or None

    @property
    def optimization_enabled(self) -> bool:
        """Merge consecutive same-model prompt units into one call (default: True)."""
        return _env_flag("PIPELINE_OPTIMIZATION", "true")

    @property
    def silence_threshold(self) -> float:
        """RMS threshold below which a window counts as silent (default: 0.01)."""
        return float(os.getenv("SILENCE_THRESHOLD", "0.01"))

    @property
    def min_silence_ms(self) -> int:
        """Minimum silence length that gets removed (default: 1500)."""
        return int(os.getenv("MIN_SILENCE_MS", "1500"))

    @property
    def library_path(self) -> Path:
        """Location of the unit/pipeline library file."""
        explicit = os.getenv("VC_LIBRARY")
        if explicit:
            return Path(explicit)
        return get_project_metadata_dir() / LIBRARY_FILENAME


# Global config instance
config = Config()

# --- Project-scoped environment helpers ---

METADATA_DIRNAME = ".voxchain"
LIBRARY_FILENAME = "library.json"
DEFAULT_ENV_FILENAME = os.getenv("VC_ENV_FILENAME", ".env")
ENV_FILE_ENV_VARS = ("VC_ENV_FILE", "VOXCHAIN_ENV_FILE")
PROJECT_ROOT_ENV_VARS = ("VC_PROJECT_ROOT", "VOXCHAIN_PROJECT_ROOT")


def detect_project_root(start_dir: Optional[str] = None) -> Optional[Path]:
    """Detect project root by looking for a .voxchain directory upwards from start_dir (or CWD)."""
    start = Path(start_dir) if start_dir else Path.cwd()
    for current in [start] + list(start.parents):
        if (current / METADATA_DIRNAME).exists():
            return current
    return None


def get_project_metadata_dir(project_root: Optional[str] = None) -> Path:
    """Return the .voxchain directory for a given or detected project root."""
    if project_root is None:
        for var in PROJECT_ROOT_ENV_VARS:
            if os.getenv(var):
                project_root = os.getenv(var)
                break
    root = Path(project_root) if project_root else (detect_project_root() or Path.cwd())
    return root / METADATA_DIRNAME


def get_project_env_path(project_root: Optional[str] = None, filename: str = DEFAULT_ENV_FILENAME) -> Path:
    """Compute the path to the project-scoped environment file inside .voxchain."""
    return get_project_metadata_dir(project_root) / filename


def ensure_project_env(project_root: Optional[str] = None, filename: str = DEFAULT_ENV_FILENAME, overwrite: bool = False) -> Path:
    """
    Create a template env file under .voxchain if none exists.

    This never loads env values, it only writes the file.

    Returns:
        Path to the env file under the project's .voxchain directory.
    """
    target = get_project_env_path(project_root, filename)
    if target.exists() and not overwrite:
        return target

    target.parent.mkdir(parents=True, exist_ok=True)
    template = (
        "# Project-scoped environment for voxchain\n"
        "LLM_MODEL=gpt-4o-mini\n"
        "IS_REASONING_MODEL=false\n"
        "MODEL_TEMPERATURE=0.7\n"
        "OPENAI_TIMEOUT=60\n"
        "MAX_RETRIES=3\n"
        "PIPELINE_OPTIMIZATION=true\n"
        "SILENCE_THRESHOLD=0.01\n"
        "MIN_SILENCE_MS=1500\n"
        "# OPENAI_API_KEY=your-key-here\n"
        "# OPENWEBUI_BASE_URL=http://localhost:3000/api\n"
        "# OPENWEBUI_API_KEY=your-key-here\n"
    )
    target.write_text(template, encoding="utf-8")
    return target


def load_project_env(project_root: Optional[str] = None, filename: str = DEFAULT_ENV_FILENAME, override: bool = False) -> Optional[str]:
    """
    Load a project-scoped environment file, if available.

    Load order (first match wins):
    1) Explicit env file path via VC_ENV_FILE or VOXCHAIN_ENV_FILE
    2) <project_root>/.voxchain/<filename> (default: .env)

    Returns the path loaded, or None if nothing was loaded.
    """
    for var in ENV_FILE_ENV_VARS:
        explicit = os.getenv(var)
        if explicit and Path(explicit).is_file():
            load_config(explicit, override=override)
            return explicit

    env_path = get_project_env_path(project_root, filename)
    if env_path.is_file():
        load_config(str(env_path), override=override)
        return str(env_path)

    return None


@lru_cache(maxsize=4)
def get_async_client(base_url: Optional[str] = None, api_key: Optional[str] = None) -> AsyncOpenAI:
    """
    Get a configured async OpenAI client with timeout and retry settings.

    With no arguments the official OpenAI endpoint is used and the key is taken
    from OPENAI_API_KEY, loading the project env first if it is missing.
    Passing base_url targets an OpenAI-compatible server such as Open WebUI.

    Raises:
        ConfigurationError: If API key is not configured after project env lookup
    """
    if base_url is None:
        if not os.getenv("OPENAI_API_KEY"):
            loaded_path = load_project_env()
            if not os.getenv("OPENAI_API_KEY"):
                where = loaded_path or f"{METADATA_DIRNAME}/{DEFAULT_ENV_FILENAME}"
                raise ConfigurationError(
                    f"OPENAI_API_KEY not found in environment. Looked for project env at {where}. "
                    f"Set it via environment, VC_ENV_FILE, or place it under {METADATA_DIRNAME}/{DEFAULT_ENV_FILENAME}."
                )
        api_key = api_key or config.openai_api_key
    try:
        return AsyncOpenAI(
            api_key=api_key or "not-needed",
            base_url=base_url,
            timeout=config.openai_timeout,
            max_retries=config.max_retries,
        )
    except Exception as e:
        raise ConfigurationError(f"Failed to create OpenAI client: {e}") from e

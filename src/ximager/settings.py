from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_SERVER_URL = "http://127.0.0.1:8188"


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    server_url: str = DEFAULT_SERVER_URL
    workflow_dir: str = "workflows"
    output_dir: str = "outputs"
    keywords_path: str = "keywords.json"
    macros_path: str = "macros.json"
    keywords_url: str = ""
    poll_interval_seconds: float = 1.0
    poll_max_attempts: int = 60
    progress_steps: int = 50
    progress_step_seconds: float = 0.08
    progress_cap_percent: int = 95
    request_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls, *, env_file: Path | None = None) -> "RuntimeSettings":
        """Build settings from ``XIMAGER_*`` variables, loading ``.env`` first if present."""
        env_path = env_file if env_file is not None else Path.cwd() / ".env"
        if env_path.is_file():
            load_dotenv(env_path)
        return cls(
            server_url=os.getenv("XIMAGER_SERVER_URL", DEFAULT_SERVER_URL),
            workflow_dir=os.getenv("XIMAGER_WORKFLOW_DIR", "workflows"),
            output_dir=os.getenv("XIMAGER_OUTPUT_DIR", "outputs"),
            keywords_path=os.getenv("XIMAGER_KEYWORDS_PATH", "keywords.json"),
            macros_path=os.getenv("XIMAGER_MACROS_PATH", "macros.json"),
            keywords_url=os.getenv("XIMAGER_KEYWORDS_URL", ""),
            poll_interval_seconds=_get_env_float("XIMAGER_POLL_INTERVAL", default=1.0, minimum=0.0),
            poll_max_attempts=_get_env_int("XIMAGER_POLL_MAX_ATTEMPTS", default=60, minimum=1),
            progress_steps=_get_env_int("XIMAGER_PROGRESS_STEPS", default=50, minimum=1),
            progress_step_seconds=_get_env_float("XIMAGER_PROGRESS_STEP_SECONDS", default=0.08, minimum=0.0),
            progress_cap_percent=_get_env_int("XIMAGER_PROGRESS_CAP", default=95, minimum=0, maximum=99),
            request_timeout_seconds=_get_env_float("XIMAGER_REQUEST_TIMEOUT", default=30.0, minimum=0.1),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        server_url = self.server_url.strip().rstrip("/")
        if not server_url:
            raise ValueError("XIMAGER_SERVER_URL must be non-empty")
        if not server_url.startswith(("http://", "https://")):
            raise ValueError(f"XIMAGER_SERVER_URL must be an http(s) URL, got: {server_url!r}")

        if not self.workflow_dir.strip():
            raise ValueError("XIMAGER_WORKFLOW_DIR must be non-empty")
        if not self.output_dir.strip():
            raise ValueError("XIMAGER_OUTPUT_DIR must be non-empty")
        if not self.keywords_path.strip():
            raise ValueError("XIMAGER_KEYWORDS_PATH must be non-empty")
        if not self.macros_path.strip():
            raise ValueError("XIMAGER_MACROS_PATH must be non-empty")
        if self.keywords_path.strip() == self.macros_path.strip():
            raise ValueError("XIMAGER_KEYWORDS_PATH and XIMAGER_MACROS_PATH must be separate documents")

        if self.poll_max_attempts < 1:
            raise ValueError(f"XIMAGER_POLL_MAX_ATTEMPTS must be >= 1, got: {self.poll_max_attempts}")
        if self.progress_steps < 1:
            raise ValueError(f"XIMAGER_PROGRESS_STEPS must be >= 1, got: {self.progress_steps}")
        if not 0 <= self.progress_cap_percent < 100:
            raise ValueError(f"XIMAGER_PROGRESS_CAP must be in [0, 100), got: {self.progress_cap_percent}")
        if self.poll_interval_seconds < 0 or self.progress_step_seconds < 0:
            raise ValueError("poll interval and progress step duration must be >= 0")
        if self.request_timeout_seconds <= 0:
            raise ValueError(f"XIMAGER_REQUEST_TIMEOUT must be > 0, got: {self.request_timeout_seconds}")

        return RuntimeSettings(
            server_url=server_url,
            workflow_dir=self.workflow_dir.strip(),
            output_dir=self.output_dir.strip(),
            keywords_path=self.keywords_path.strip(),
            macros_path=self.macros_path.strip(),
            keywords_url=self.keywords_url.strip(),
            poll_interval_seconds=self.poll_interval_seconds,
            poll_max_attempts=self.poll_max_attempts,
            progress_steps=self.progress_steps,
            progress_step_seconds=self.progress_step_seconds,
            progress_cap_percent=self.progress_cap_percent,
            request_timeout_seconds=self.request_timeout_seconds,
        )

    def workflow_path(self, repo_root: Path) -> Path:
        path = Path(self.workflow_dir)
        return path if path.is_absolute() else repo_root / path

    def output_path(self, repo_root: Path) -> Path:
        path = Path(self.output_dir)
        return path if path.is_absolute() else repo_root / path

    def keywords_file(self, repo_root: Path) -> Path:
        path = Path(self.keywords_path)
        return path if path.is_absolute() else repo_root / path

    def macros_file(self, repo_root: Path) -> Path:
        path = Path(self.macros_path)
        return path if path.is_absolute() else repo_root / path


def _normalize_url(url: str) -> str:
    value = url.strip().rstrip("/")
    if not value:
        raise ValueError("server url must be non-empty")
    return value


class EngineConfig:
    """Mutable holder for the engine base URL.

    One writer is expected (the settings layer or the CLI). Gateways read the
    URL on every request, so a ``set_server_url`` call takes effect on the next
    call. Tests construct their own instance instead of touching the default.
    """

    def __init__(self, server_url: str = DEFAULT_SERVER_URL) -> None:
        self._server_url = _normalize_url(server_url)

    def get_server_url(self) -> str:
        return self._server_url

    def set_server_url(self, url: str) -> None:
        self._server_url = _normalize_url(url)


_DEFAULT_ENGINE_CONFIG = EngineConfig()


def default_engine_config() -> EngineConfig:
    """Return the process-scoped engine configuration."""
    return _DEFAULT_ENGINE_CONFIG


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 86_400.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed

from __future__ import annotations

import os
from dataclasses import dataclass, field

from browser_sandbox.context import DEFAULT_USER_AGENT, ContextOptions, ResourceBlockPolicy
from browser_sandbox.session import LaunchOptions


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _env_csv(name: str, *, lower: bool = True) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return ()
    out: list[str] = []
    for part in str(raw).split(","):
        item = part.strip()
        if lower:
            item = item.lower()
        if item:
            out.append(item)
    return tuple(out)


@dataclass(frozen=True)
class RunnerSettings:
    host: str = field(default_factory=lambda: _env_str("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("PORT", 3000))
    # "development" exposes stack traces in error responses.
    app_env: str = field(default_factory=lambda: _env_str("APP_ENV", "production").lower())
    log_level: str = field(default_factory=lambda: _env_str("LOG_LEVEL", "INFO").upper())

    # Browser process.
    chrome_path: str = field(default_factory=lambda: os.getenv("CHROME_PATH", "").strip())
    browser_mode: str = field(default_factory=lambda: _env_str("BROWSER_MODE", "cold").lower())
    headless: bool = field(default_factory=lambda: _env_bool("BROWSER_HEADLESS", True))

    # Request guardrails.
    default_timeout_ms: int = field(default_factory=lambda: _env_int("DEFAULT_TIMEOUT_MS", 60_000))
    max_upload_bytes: int = field(default_factory=lambda: _env_int("MAX_UPLOAD_BYTES", 5 * 1024 * 1024))
    max_body_bytes: int = field(default_factory=lambda: _env_int("MAX_BODY_BYTES", 10 * 1024 * 1024))
    cors_allow_origins: tuple[str, ...] = field(
        default_factory=lambda: _env_csv("CORS_ALLOW_ORIGINS", lower=False) or ("*",)
    )

    # Per-request browsing context defaults.
    locale: str = field(default_factory=lambda: _env_str("BROWSER_LOCALE", "en-US"))
    user_agent: str = field(default_factory=lambda: _env_str("BROWSER_USER_AGENT", DEFAULT_USER_AGENT))
    viewport_width: int = field(default_factory=lambda: _env_int("VIEWPORT_WIDTH", 1920))
    viewport_height: int = field(default_factory=lambda: _env_int("VIEWPORT_HEIGHT", 1080))
    stealth_enabled: bool = field(default_factory=lambda: _env_bool("STEALTH_ENABLED", True))
    ignore_https_errors: bool = field(default_factory=lambda: _env_bool("IGNORE_HTTPS_ERRORS", True))
    block_resource_types: tuple[str, ...] = field(default_factory=lambda: _env_csv("BLOCK_RESOURCE_TYPES"))
    block_url_patterns: tuple[str, ...] = field(default_factory=lambda: _env_csv("BLOCK_URL_PATTERNS", lower=False))

    @property
    def development(self) -> bool:
        return self.app_env == "development"

    def launch_options(self) -> LaunchOptions:
        return LaunchOptions(
            headless=bool(self.headless),
            executable_path=self.chrome_path or None,
            window_width=int(self.viewport_width),
            window_height=int(self.viewport_height),
        )

    def context_options(self) -> ContextOptions:
        return ContextOptions(
            locale=self.locale,
            user_agent=self.user_agent,
            viewport_width=int(self.viewport_width),
            viewport_height=int(self.viewport_height),
            ignore_https_errors=bool(self.ignore_https_errors),
            stealth=bool(self.stealth_enabled),
            block=ResourceBlockPolicy(
                resource_types=frozenset(self.block_resource_types),
                url_patterns=tuple(self.block_url_patterns),
            ),
        )

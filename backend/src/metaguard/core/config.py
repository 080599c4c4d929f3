"""Application settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from metaguard.persistence.config import StoreConfig

DEV_SECRET_KEY = "dev-secret-key-change-in-production"
DEFAULT_HOOK_MODULES = ("metaguard.shop",)

_TRUE = ("1", "true", "yes")


def _flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in _TRUE


def resolve_base_path() -> Path:
    """Repository root, whether started from the root or from backend/."""
    cwd = Path.cwd()
    if cwd.name == "backend":
        return cwd.parent
    return cwd


@dataclass
class Settings:
    """Runtime settings.

    Attributes:
        secret_key: HS256 key bearer tokens are verified with
        disable_auth: Skip token verification and give every request
            default_role (local development and tests)
        default_role: Role used when auth is disabled
        metadata_path: Root holding collections/ and blocks/
        strict_ids: Reject a whole id batch when any entry is malformed
        max_limit: Upper bound for list page sizes
        hook_modules: Modules imported at startup to register hooks and types
        port: HTTP port for ``metaguard serve``
        log_level: Root log level name
        store: Document store configuration
    """

    secret_key: str = DEV_SECRET_KEY
    disable_auth: bool = False
    default_role: str = "admin"
    metadata_path: Path = field(default_factory=lambda: resolve_base_path() / "metadata")
    strict_ids: bool = False
    max_limit: int = 1000
    hook_modules: tuple[str, ...] = DEFAULT_HOOK_MODULES
    port: int = 8000
    log_level: str = "info"
    store: StoreConfig = field(default_factory=lambda: StoreConfig(url="memory://"))

    @classmethod
    def from_env(cls) -> Settings:
        """Create settings from METAGUARD_* environment variables."""
        metadata_path = os.environ.get("METAGUARD_METADATA_PATH")
        hook_modules = os.environ.get("METAGUARD_HOOK_MODULES")
        return cls(
            secret_key=os.environ.get("METAGUARD_SECRET_KEY", DEV_SECRET_KEY),
            disable_auth=_flag("METAGUARD_DISABLE_AUTH"),
            default_role=os.environ.get("METAGUARD_DEFAULT_ROLE", "admin"),
            metadata_path=Path(metadata_path) if metadata_path else resolve_base_path() / "metadata",
            strict_ids=_flag("METAGUARD_STRICT_IDS"),
            max_limit=int(os.environ.get("METAGUARD_MAX_LIMIT", "1000")),
            hook_modules=(
                tuple(m.strip() for m in hook_modules.split(",") if m.strip())
                if hook_modules is not None
                else DEFAULT_HOOK_MODULES
            ),
            port=int(os.environ.get("METAGUARD_PORT", "8000")),
            log_level=os.environ.get("METAGUARD_LOG_LEVEL", "info").lower(),
            store=StoreConfig.from_env(),
        )

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

PROJECT_ROOT = Path(__file__).resolve().parents[2]

INTEGER_POLICIES = ("minimal", "widest")
TEXT_POLICIES = ("minimal", "widest")


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes")


def _env_int_tuple(name: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return tuple(sorted(int(p) for p in raw.split(",") if p.strip()))


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read from INGEST_* environment variables.

    Width thresholds default to MySQL/InnoDB limits; they are settings rather
    than constants so another backend can supply its own.
    """

    env: str = "dev"

    # Primary backend (networked MySQL)
    mysql_host: str = "127.0.0.1"
    mysql_port: int = 3306
    mysql_user: str = ""
    mysql_password: str = ""
    mysql_charset: str = "utf8mb4"
    mysql_collation: str = "utf8mb4_unicode_ci"
    mysql_enabled: bool = True
    connect_timeout_seconds: int = 5

    # Fallback backend (file-backed SQLite)
    sqlite_root: Path = field(default_factory=lambda: PROJECT_ROOT / "storage" / "tenants")

    # Tenant directory
    tenants_file: Optional[Path] = None
    catalog_url: Optional[str] = None

    # Inference
    integer_policy: str = "minimal"
    text_policy: str = "minimal"
    int_thresholds: Tuple[int, ...] = (127, 32767, 2147483647, 9223372036854775807)
    short_text_lengths: Tuple[int, ...] = (50, 100, 191, 255)
    text_max_length: int = 65535
    medium_text_max_length: int = 16777215
    wide_table_columns: int = 50
    bytes_per_char: int = 4
    row_bytes_safe_limit: int = 50000

    # Loading
    chunk_size: int = 500
    lock_timeout_seconds: int = 10

    expose_error_detail: bool = False

    def __post_init__(self) -> None:
        if self.integer_policy not in INTEGER_POLICIES:
            raise ValueError(f"Unknown integer policy: {self.integer_policy}")
        if self.text_policy not in TEXT_POLICIES:
            raise ValueError(f"Unknown text policy: {self.text_policy}")
        if len(self.int_thresholds) != 4:
            raise ValueError("int_thresholds needs exactly four bounds (tiny, small, int, big)")
        if not self.short_text_lengths:
            raise ValueError("short_text_lengths must not be empty")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")

    def sqlite_path_for(self, database_name: str) -> Path:
        return self.sqlite_root / f"{database_name}.sqlite"


def get_settings() -> Settings:
    """Build settings from the current environment (no caching: tests monkeypatch env)."""
    tenants_file = _env_str("INGEST_TENANTS_FILE")
    sqlite_root = _env_str("INGEST_SQLITE_ROOT")
    return Settings(
        env=_env_str("INGEST_ENV", "dev").lower(),
        mysql_host=_env_str("INGEST_MYSQL_HOST", "127.0.0.1"),
        mysql_port=_env_int("INGEST_MYSQL_PORT", 3306),
        mysql_user=_env_str("INGEST_MYSQL_USER"),
        mysql_password=os.getenv("INGEST_MYSQL_PASSWORD") or "",
        mysql_enabled=_env_bool("INGEST_MYSQL_ENABLED", True),
        connect_timeout_seconds=_env_int("INGEST_CONNECT_TIMEOUT_SECONDS", 5),
        sqlite_root=Path(sqlite_root) if sqlite_root else PROJECT_ROOT / "storage" / "tenants",
        tenants_file=Path(tenants_file) if tenants_file else None,
        catalog_url=_env_str("INGEST_CATALOG_URL") or None,
        integer_policy=_env_str("INGEST_INTEGER_POLICY", "minimal").lower(),
        text_policy=_env_str("INGEST_TEXT_POLICY", "minimal").lower(),
        short_text_lengths=_env_int_tuple("INGEST_SHORT_TEXT_LENGTHS", (50, 100, 191, 255)),
        wide_table_columns=_env_int("INGEST_WIDE_TABLE_COLUMNS", 50),
        bytes_per_char=_env_int("INGEST_BYTES_PER_CHAR", 4),
        row_bytes_safe_limit=_env_int("INGEST_ROW_BYTES_SAFE_LIMIT", 50000),
        chunk_size=_env_int("INGEST_CHUNK_SIZE", 500),
        lock_timeout_seconds=_env_int("INGEST_LOCK_TIMEOUT_SECONDS", 10),
        expose_error_detail=_env_bool("INGEST_EXPOSE_ERROR_DETAIL", False),
    )

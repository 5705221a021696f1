"""
tablesync configuration — environment variables in one place.

Read from the environment when a Settings is constructed. Each value is
looked up as TABLESYNC_<NAME> first, then <NAME>. Never hardcode secrets.
"""

from __future__ import annotations

import os
from typing import Any

from tablesync.kernel.types import DEFAULT_SEARCH_DEBOUNCE_MS, TableConfig


def _env(name: str, default: str = "") -> str:
    return os.environ.get(f"TABLESYNC_{name}") or os.environ.get(name) or default


class Settings:
    """Settings for the Supabase adapter and engine defaults."""

    def __init__(self) -> None:
        # Supabase
        self.SUPABASE_URL: str = _env("SUPABASE_URL")
        self.SUPABASE_KEY: str = _env("SUPABASE_KEY") or _env("SUPABASE_ANON_KEY")
        self.SUPABASE_SCHEMA: str = _env("SUPABASE_SCHEMA", "public")

        # Engine
        self.SEARCH_DEBOUNCE_MS: int = int(_env("SEARCH_DEBOUNCE_MS", str(DEFAULT_SEARCH_DEBOUNCE_MS)))

        # Application
        self.ENVIRONMENT: str = _env("ENVIRONMENT", "development")

    def table_config(self, table_name: str, **kwargs: Any) -> TableConfig:
        """TableConfig for `table_name` with the configured search debounce."""
        kwargs.setdefault("search_debounce_ms", self.SEARCH_DEBOUNCE_MS)
        return TableConfig(table_name=table_name, **kwargs)

    def require_supabase(self) -> None:
        if not self.SUPABASE_URL:
            raise RuntimeError("SUPABASE_URL environment variable is required")
        if not self.SUPABASE_KEY:
            raise RuntimeError("SUPABASE_KEY environment variable is required")

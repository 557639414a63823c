from __future__ import annotations

from typing import Optional
from pydantic import BaseModel, Field

from packages.shared.paths import db_path


class AppConfig(BaseModel):
    poll_interval_ms: int = Field(default=5000, ge=100)
    enforce_block_rules: bool = True
    recent_runs_limit: int = Field(default=100, ge=1)
    db_path: Optional[str] = None

    def resolved_db_path(self) -> str:
        return self.db_path or str(db_path())

    def to_monitor_config(self) -> dict:
        return {
            "poll_interval_ms": self.poll_interval_ms,
            "enforce_block_rules": self.enforce_block_rules,
        }

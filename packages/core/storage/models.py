from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum

from pydantic import BaseModel, field_validator


def path_key(full_path: str) -> str:
    """Case-folded path used as the App identity, in storage and in caches."""
    return full_path.casefold()


class RunStatus(IntEnum):
    OPENED = 0
    CLOSED = 1


class BlockType(IntEnum):
    FULL_PATH = 1
    PROCESS_NAME = 2
    WINDOW_TITLE = 3
    APP_ID = 4


@dataclass(frozen=True)
class App:
    """A distinct executable, keyed by its canonical path."""
    id: int
    name: str
    full_path: str
    created_at: datetime


@dataclass
class AppRun:
    """
    One continuous interval during which an App was observed live.

    While status is OPENED, end_utc is the last time the app was seen,
    not a real end.
    """
    id: int
    app_id: int
    start_utc: datetime
    end_utc: datetime
    status: RunStatus


@dataclass(frozen=True)
class BlockRule:
    id: int
    block_type: int
    block_type_name: str
    block_value: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class BlockTypeInfo:
    id: int
    name: str


class BlockRuleInput(BaseModel):
    """Validated write payload for creating or updating a block rule."""
    block_type: BlockType
    block_value: str

    @field_validator("block_value")
    @classmethod
    def _value_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Block value cannot be empty.")
        return v

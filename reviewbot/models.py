from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from peewee import (
    CharField,
    DateTimeField,
    IntegerField,
    Model,
    SqliteDatabase,
)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 16
VALID_NAME_RE = re.compile(r"^[a-zA-Z0-9\s._-]+$")


def utcnow_naive() -> datetime:
    """Return current UTC time without tzinfo for SQLite storage."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class NameModels:
    db: SqliteDatabase
    IngameName: type


def _create_name_models(db: SqliteDatabase) -> NameModels:
    class BaseModel(Model):
        created_at = DateTimeField(default=utcnow_naive)
        updated_at = DateTimeField(default=utcnow_naive)

        def save(self, *args, **kwargs):  # type: ignore[override]
            self.updated_at = utcnow_naive()
            return super().save(*args, **kwargs)

        class Meta:
            database = db

    class IngameName(BaseModel):
        discord_user_id = IntegerField(primary_key=True)
        ingame_name = CharField(null=True)

        class Meta:
            table_name = "ingame_names"

    return NameModels(db=db, IngameName=IngameName)


def init_name_db(path: str) -> NameModels:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = SqliteDatabase(path, pragmas={"journal_mode": "wal", "busy_timeout": 5000})
    models = _create_name_models(db)
    db.connect(reuse_if_open=True)
    db.create_tables([models.IngameName])
    return models


class SqliteIdentityStore:
    """Identity store backed by the ``ingame_names`` table.

    ``get`` returns ``None`` when no name is recorded and lets database
    errors propagate so callers can tell an outage from an unset name.
    """

    def __init__(self, models: NameModels):
        self.models = models

    @classmethod
    def open(cls, path: str) -> "SqliteIdentityStore":
        return cls(init_name_db(path))

    async def get(self, user_id: int) -> Optional[str]:
        row = self.models.IngameName.get_or_none(
            self.models.IngameName.discord_user_id == user_id
        )
        if row is None or not row.ingame_name:
            return None
        return str(row.ingame_name)

    async def set(self, user_id: int, name: str) -> None:
        self.models.IngameName.insert(
            discord_user_id=user_id,
            ingame_name=name,
            updated_at=utcnow_naive(),
        ).on_conflict(
            conflict_target=[self.models.IngameName.discord_user_id],
            update={
                self.models.IngameName.ingame_name: name,
                self.models.IngameName.updated_at: utcnow_naive(),
            },
        ).execute()

    async def ping(self) -> bool:
        self.models.db.execute_sql("SELECT 1").fetchall()
        return True

    def close(self) -> None:
        if not self.models.db.is_closed():
            self.models.db.close()


def validate_ingame_name(name: str | None) -> str:
    """Return the trimmed name or raise ``ValueError`` with a readable reason."""
    if not name or not isinstance(name, str):
        raise ValueError("Invalid input type")
    trimmed = name.strip()
    if len(trimmed) < NAME_MIN_LENGTH:
        raise ValueError(f"Name must be at least {NAME_MIN_LENGTH} characters long")
    if len(trimmed) > NAME_MAX_LENGTH:
        raise ValueError(f"Name cannot be longer than {NAME_MAX_LENGTH} characters")
    if not VALID_NAME_RE.match(trimmed):
        raise ValueError(
            "Name can only contain letters, numbers, spaces, dots, underscores, and hyphens"
        )
    return trimmed

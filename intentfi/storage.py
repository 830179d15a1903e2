import asyncio
import json
import logging
import time
from typing import Any, Optional

from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine

logger = logging.getLogger("intentfi.storage")


class Snapshot(SQLModel, table=True):
    key: str = Field(primary_key=True)
    payload: str = Field(default="[]")
    updated_at: float = Field(default_factory=lambda: time.time())


def make_engine(database_url: str):
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection so the in-memory database survives across sessions/threads
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url)


class SnapshotStore:
    """Whole-list snapshots keyed by string, written off the event loop."""

    def __init__(self, database_url: str = "sqlite://") -> None:
        self.engine = make_engine(database_url)
        SQLModel.metadata.create_all(self.engine)

    def _load(self, key: str) -> Optional[Any]:
        with Session(self.engine) as session:
            row = session.get(Snapshot, key)
            if row is None:
                return None
            return json.loads(row.payload)

    def _save(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        with Session(self.engine) as session:
            row = session.get(Snapshot, key)
            if row is None:
                row = Snapshot(key=key, payload=payload)
            else:
                row.payload = payload
                row.updated_at = time.time()
            session.add(row)
            session.commit()

    def _delete(self, key: str) -> None:
        with Session(self.engine) as session:
            row = session.get(Snapshot, key)
            if row is not None:
                session.delete(row)
                session.commit()

    async def load(self, key: str) -> Optional[Any]:
        try:
            return await asyncio.to_thread(self._load, key)
        except json.JSONDecodeError as exc:
            logger.error("snapshot_corrupt key=%s err=%s", key, exc)
            return None

    async def save(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._save, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

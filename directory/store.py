"""
directory/store.py -- SQLAlchemy Core persistence for the local admin directory.

Pattern: Repository + Data Mapper. LocalAdminStore is the synchronous
repository; record_from_row / record_to_row (directory/models.py) are the
mappers. LocalAdminBackend adapts the store to the async AdminBackend
contract by running every call in Starlette's thread pool, so SQLite work
never blocks the event loop.

The same table serves two purposes:
  local mode  -- it IS the authoritative directory.
  remote mode -- it is the write-through mirror of the remote directory,
                 read only when the remote backend fails.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The last-admin guard is enforced inside the DELETE statement itself
  (a COUNT(*) > 1 subquery), so a concurrent delete cannot slip between a
  separate count and delete.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import Column, MetaData, String, Table, create_engine, event, func, select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from starlette.concurrency import run_in_threadpool

from core.exceptions import LastAdminError, NotFound, StorageUnavailable
from core.models import AdminRecord
from directory.models import AdminPatch, AdminSeed, now_iso, record_from_row, record_to_row

logger = logging.getLogger("steamauth.directory.store")

T = TypeVar("T")

_DEFAULT_DB_URL = "sqlite:///admins.db"
_SYNCED_AT_KEY = "mirror_synced_at"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_admins = Table(
    "admin_steam_ids",
    _metadata,
    Column("steam_id", String(17), primary_key=True),
    Column("staff_name", String(80), nullable=False, server_default="Staff"),
    Column("staff_role", String(20), nullable=False, server_default="staff"),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_meta = Table(
    "directory_meta",
    _metadata,
    Column("key", String(40), primary_key=True),
    Column("value", String(64), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so mirror reads don't block on writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LocalAdminStore:
    """Repository for AdminRecord rows.

    Usage:
        store = LocalAdminStore("sqlite:///:memory:")
        store.insert_missing([AdminSeed("76561197960287930", "Gabe", Role.DEVELOPER)])
        store.list()
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        connect_args: dict = {}
        engine_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        in_memory = db_url in ("sqlite://", "sqlite:///:memory:")
        if in_memory:
            # One shared connection, otherwise every pool thread sees a blank DB.
            engine_args["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_args)
        if db_url.startswith("sqlite") and not in_memory:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> list[AdminRecord]:
        """Return all admins, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_admins.select().order_by(_admins.c.created_at, _admins.c.steam_id)).fetchall()
        return [r for r in (record_from_row(row) for row in rows) if r is not None]

    def get(self, steam_id: str) -> Optional[AdminRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(_admins.select().where(_admins.c.steam_id == steam_id)).fetchone()
        return record_from_row(row)

    def count(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_admins)).scalar()
        return int(result or 0)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_missing(self, seeds: Iterable[AdminSeed]) -> int:
        """INSERT OR IGNORE every seed. Returns the number of rows created."""
        timestamp = now_iso(self._clock)
        inserted = 0
        with self.engine.connect() as conn:
            for seed in seeds:
                stmt = (
                    sqlite_insert(_admins)
                    .values(
                        steam_id=seed.steam_id,
                        staff_name=seed.staff_name,
                        staff_role=seed.staff_role.value,
                        created_at=timestamp,
                        updated_at=timestamp,
                    )
                    .on_conflict_do_nothing(index_elements=["steam_id"])
                )
                inserted += conn.execute(stmt).rowcount or 0
            conn.commit()
        return inserted

    def upsert(self, record: AdminRecord) -> AdminRecord:
        """Insert or update by steam_id, keeping the original created_at."""
        timestamp = now_iso(self._clock)
        row = record_to_row(record)
        row["created_at"] = row["created_at"] or timestamp
        row["updated_at"] = timestamp
        stmt = sqlite_insert(_admins).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["steam_id"],
            set_={"staff_name": stmt.excluded.staff_name, "staff_role": stmt.excluded.staff_role, "updated_at": timestamp},
        )
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()
        return self.get(record.steam_id)  # type: ignore[return-value]

    def update(self, steam_id: str, patch: AdminPatch) -> AdminRecord:
        """Apply patch to an existing record. Raises NotFound if absent."""
        values: dict = {"updated_at": now_iso(self._clock)}
        if patch.staff_name is not None:
            values["staff_name"] = patch.staff_name
        if patch.staff_role is not None:
            values["staff_role"] = patch.staff_role.value
        with self.engine.connect() as conn:
            result = conn.execute(_admins.update().where(_admins.c.steam_id == steam_id).values(**values))
            conn.commit()
        if result.rowcount == 0:
            raise NotFound(f"Admin {steam_id} not found.")
        return self.get(steam_id)  # type: ignore[return-value]

    def delete(self, steam_id: str, guard_last: bool = True) -> bool:
        """Delete one record. With guard_last, refuses to delete the final row.

        Returns True if a row was deleted.
        """
        stmt = _admins.delete().where(_admins.c.steam_id == steam_id)
        if guard_last:
            stmt = stmt.where(select(func.count()).select_from(_admins).correlate(None).scalar_subquery() > 1)
        with self.engine.connect() as conn:
            result = conn.execute(stmt)
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Mirror maintenance (remote mode)
    # ------------------------------------------------------------------

    def replace_all(self, records: Iterable[AdminRecord]) -> None:
        """Replace the whole table with a remote snapshot in one transaction."""
        rows = [record_to_row(r) for r in records]
        with self.engine.begin() as conn:
            conn.execute(_admins.delete())
            if rows:
                conn.execute(_admins.insert(), rows)
            self._mark_synced(conn)

    def upsert_snapshot(self, record: AdminRecord) -> None:
        """Mirror one remote record verbatim, timestamps included."""
        row = record_to_row(record)
        stmt = sqlite_insert(_admins).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["steam_id"],
            set_={
                "staff_name": stmt.excluded.staff_name,
                "staff_role": stmt.excluded.staff_role,
                "created_at": stmt.excluded.created_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
            self._mark_synced(conn)

    def _mark_synced(self, conn) -> None:
        stmt = sqlite_insert(_meta).values(key=_SYNCED_AT_KEY, value=now_iso(self._clock))
        conn.execute(stmt.on_conflict_do_update(index_elements=["key"], set_={"value": stmt.excluded.value}))

    def snapshot_taken_at(self) -> Optional[str]:
        """Timestamp of the last successful mirror write, or None if never synced."""
        with self.engine.connect() as conn:
            return conn.execute(select(_meta.c.value).where(_meta.c.key == _SYNCED_AT_KEY)).scalar()

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Async backend adapter
# ---------------------------------------------------------------------------


class LocalAdminBackend:
    """AdminBackend over LocalAdminStore (local mode).

    Database errors surface as StorageUnavailable, the same outage type the
    remote backend raises, so callers handle one taxonomy.
    """

    name = "local"

    def __init__(self, store: LocalAdminStore) -> None:
        self.store = store

    async def _call(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await run_in_threadpool(fn, *args)
        except SQLAlchemyError as e:
            logger.error("Local admin store failed in %s: %s", fn.__name__, e)
            raise StorageUnavailable("Local admin store unavailable.", detail=type(e).__name__) from e

    async def list(self) -> list[AdminRecord]:
        return await self._call(self.store.list)

    async def get(self, steam_id: str) -> Optional[AdminRecord]:
        return await self._call(self.store.get, steam_id)

    async def count(self) -> int:
        return await self._call(self.store.count)

    async def add(self, record: AdminRecord) -> AdminRecord:
        return await self._call(self.store.upsert, record)

    async def update(self, steam_id: str, patch: AdminPatch) -> AdminRecord:
        return await self._call(self.store.update, steam_id, patch)

    async def remove(self, steam_id: str) -> None:
        deleted = await self._call(self.store.delete, steam_id, True)
        if deleted:
            return
        if await self.get(steam_id) is None:
            raise NotFound(f"Admin {steam_id} not found.")
        raise LastAdminError("Keep at least one authorized staff member.")

    async def insert_missing(self, seeds: list[AdminSeed]) -> int:
        return await self._call(self.store.insert_missing, seeds)

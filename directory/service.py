"""
directory/service.py -- AdminDirectory: the registry of authorized staff.

Two backends behind one async contract (AdminBackend):
  local  -- LocalAdminStore on SQLite is authoritative; no mirror.
  remote -- RemoteAdminBackend is authoritative; a LocalAdminStore holds a
            write-through mirror of the last good snapshot.

Read path (list_admins / get_admin / count_admins):
  1. Ask the authoritative backend. On success, refresh the mirror and return
     DirectoryRead(stale=False).
  2. On StorageUnavailable / UpstreamError / UpstreamTimeout, serve the mirror
     with stale=True and the snapshot timestamp. No snapshot -> re-raise.

lookup_admin() is the authorization check used by the viewer. It never falls
back to the mirror: a refused credential must surface as adminError, not as
a stale "yes, you're an admin".

Write path: authoritative backend first, then the mirror. A mirror write
failure is logged and never fails the request.

Invariant: the directory never drops to zero admins. remove_admin() re-reads
the live authoritative count right before deleting.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

import httpx
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from core.config import Settings
from core.exceptions import (
    DIRECTORY_FAILURES,
    ConfigurationError,
    LastAdminError,
    NotFound,
    StorageUnavailable,
    ValidationError,
)
from core.models import AdminRecord, is_valid_steam_id, read_text
from core.permissions import Role, normalize_role
from directory.bootstrap import parse_bootstrap_admins
from directory.models import (
    DEFAULT_STAFF_NAME,
    AdminPatch,
    DirectoryCheck,
    AdminSeed,
    DirectoryRead,
    now_iso,
    sanitize_staff_name,
)
from directory.remote import RemoteAdminBackend
from directory.store import LocalAdminBackend, LocalAdminStore

logger = logging.getLogger("steamauth.directory")

T = TypeVar("T")

MODE_LOCAL = "local"
MODE_REMOTE = "remote"


class AdminBackend(Protocol):
    name: str

    async def list(self) -> list[AdminRecord]: ...

    async def get(self, steam_id: str) -> Optional[AdminRecord]: ...

    async def count(self) -> int: ...

    async def add(self, record: AdminRecord) -> AdminRecord: ...

    async def update(self, steam_id: str, patch: AdminPatch) -> AdminRecord: ...

    async def remove(self, steam_id: str) -> None: ...

    async def insert_missing(self, seeds: list[AdminSeed]) -> int: ...


def select_backend_mode(settings: Settings) -> str:
    """auto -> remote only when both URL and key are configured."""
    if settings.admins_provider == MODE_REMOTE:
        return MODE_REMOTE
    if settings.admins_provider == MODE_LOCAL:
        return MODE_LOCAL
    return MODE_REMOTE if settings.remote_directory_configured else MODE_LOCAL


def _require_steam_id(value: Any) -> str:
    steam_id = read_text(value)
    if not is_valid_steam_id(steam_id):
        raise ValidationError("Invalid Steam ID.", detail="Expected a 17-digit Steam64 id.")
    return steam_id


class AdminDirectory:
    def __init__(
        self,
        mode: str,
        backend: AdminBackend,
        mirror: Optional[LocalAdminStore] = None,
        seeds: Optional[list[AdminSeed]] = None,
        clock: Callable[[], float] = time.time,
        local_store: Optional[LocalAdminStore] = None,
    ) -> None:
        self.mode = mode
        self.backend = backend
        self.mirror = mirror
        self.seeds = list(seeds or [])
        self._bootstrap_roles = {seed.steam_id: seed.staff_role for seed in self.seeds}
        self._clock = clock
        self._local_store = local_store

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Insert missing bootstrap seeds and take the first mirror snapshot.

        Never raises for backend trouble: the service comes up degraded and
        every request reports the failure through adminError instead.
        """
        if self.seeds:
            try:
                inserted = await self.backend.insert_missing(self.seeds)
                if inserted:
                    logger.info("Bootstrapped %d admin(s) into the %s directory", inserted, self.mode)
            except StorageUnavailable as e:
                logger.warning("Bootstrap admin insert refused by the %s directory: %s", self.mode, e.message)
            except DIRECTORY_FAILURES as e:
                logger.error("Bootstrap admin insert failed: %s", e.message)

        try:
            admins = await self.list_admins()
        except DIRECTORY_FAILURES as e:
            logger.error("Admin directory unavailable at startup (%s): %s", self.mode, e.message)
            return
        if admins.stale:
            logger.warning("Admin directory started from a stale mirror snapshot (as of %s)", admins.as_of)
        if not admins.value:
            logger.warning("Admin directory is empty. Configure BOOTSTRAP_ADMIN_IDS to grant access.")

    def close(self) -> None:
        # In remote mode the mirror is the local store, so one close covers both.
        store = self._local_store or self.mirror
        if store is not None:
            store.close()

    def bootstrap_role(self, steam_id: str) -> Optional[Role]:
        """Role granted by static configuration, without touching any backend."""
        return self._bootstrap_roles.get(read_text(steam_id))

    # ------------------------------------------------------------------
    # Mirror helpers
    # ------------------------------------------------------------------

    async def _mirror_call(self, fn: Callable[..., Any], *args: Any) -> None:
        if self.mirror is None:
            return
        try:
            await run_in_threadpool(fn, *args)
        except SQLAlchemyError as e:
            logger.warning("Admin mirror write failed: %s", e)

    async def _read(
        self,
        context: str,
        fetch: Callable[[], Awaitable[T]],
        from_mirror: Callable[[], T],
        on_success: Optional[Callable[[T], Awaitable[None]]] = None,
    ) -> DirectoryRead[T]:
        try:
            value = await fetch()
        except DIRECTORY_FAILURES as e:
            if self.mirror is None:
                raise
            as_of = await run_in_threadpool(self.mirror.snapshot_taken_at)
            if as_of is None:
                raise
            logger.warning("Serving %s from admin mirror (as of %s): %s", context, as_of, e.message)
            value = await run_in_threadpool(from_mirror)
            return DirectoryRead(value=value, stale=True, as_of=as_of, source="mirror")
        if on_success is not None:
            await on_success(value)
        return DirectoryRead(value=value, stale=False, as_of=now_iso(self._clock), source=self.backend.name)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_admins(self) -> DirectoryRead[list[AdminRecord]]:
        mirror = self.mirror

        async def refresh(records: list[AdminRecord]) -> None:
            if mirror is not None:
                await self._mirror_call(mirror.replace_all, records)

        return await self._read(
            "admin list",
            self.backend.list,
            mirror.list if mirror else (lambda: []),
            refresh,
        )

    async def get_admin(self, steam_id: str) -> DirectoryRead[AdminRecord]:
        """One record, or NotFound. Falls back to the mirror like list_admins."""
        steam_id = _require_steam_id(steam_id)
        mirror = self.mirror

        async def refresh(record: Optional[AdminRecord]) -> None:
            if record is not None and mirror is not None:
                await self._mirror_call(mirror.upsert_snapshot, record)

        read = await self._read(
            "admin record",
            lambda: self.backend.get(steam_id),
            (lambda: mirror.get(steam_id)) if mirror else (lambda: None),
            refresh,
        )
        if read.value is None:
            raise NotFound(f"Admin {steam_id} not found.")
        return read

    async def count_admins(self) -> DirectoryRead[int]:
        if self.mirror is None:
            return await self._read("admin count", self.backend.count, lambda: 0)
        listing = await self.list_admins()
        return DirectoryRead(value=len(listing.value), stale=listing.stale, as_of=listing.as_of, source=listing.source)

    async def lookup_admin(self, steam_id: str) -> Optional[AdminRecord]:
        """Authoritative lookup. Directory failures propagate unchanged."""
        steam_id = read_text(steam_id)
        if not is_valid_steam_id(steam_id):
            return None
        record = await self.backend.get(steam_id)
        if record is not None and self.mirror is not None:
            await self._mirror_call(self.mirror.upsert_snapshot, record)
        return record

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_admin(
        self,
        steam_id: Any,
        staff_role: Any = None,
        staff_name: Any = None,
    ) -> AdminRecord:
        """Create or update by steam id. Existing name and created_at are kept."""
        steam_id = _require_steam_id(steam_id)
        existing = await self.backend.get(steam_id)
        fallback_name = existing.staff_name if existing else DEFAULT_STAFF_NAME
        record = AdminRecord(
            steam_id=steam_id,
            staff_name=sanitize_staff_name(staff_name, fallback_name),
            staff_role=normalize_role(staff_role, existing.staff_role if existing else Role.STAFF),
            created_at=existing.created_at if existing else "",
        )
        saved = await self.backend.add(record)
        if self.mirror is not None:
            await self._mirror_call(self.mirror.upsert_snapshot, saved)
        logger.info("Admin %s saved with role %s", steam_id, saved.staff_role.value)
        return saved

    async def update_admin(self, steam_id: Any, staff_role: Any = None, staff_name: Any = None) -> AdminRecord:
        steam_id = _require_steam_id(steam_id)
        existing = await self.backend.get(steam_id)
        if existing is None:
            raise NotFound(f"Admin {steam_id} not found.")
        patch = AdminPatch(
            staff_name=sanitize_staff_name(staff_name, existing.staff_name) if staff_name is not None else None,
            staff_role=normalize_role(staff_role, existing.staff_role) if staff_role is not None else None,
        )
        saved = await self.backend.update(steam_id, patch)
        if self.mirror is not None:
            await self._mirror_call(self.mirror.upsert_snapshot, saved)
        logger.info("Admin %s updated (role %s)", steam_id, saved.staff_role.value)
        return saved

    async def remove_admin(self, steam_id: Any) -> None:
        steam_id = _require_steam_id(steam_id)
        if await self.backend.get(steam_id) is None:
            raise NotFound(f"Admin {steam_id} not found.")
        if await self.backend.count() <= 1:
            raise LastAdminError("Keep at least one authorized staff member.")
        await self.backend.remove(steam_id)
        if self.mirror is not None:
            await self._mirror_call(self.mirror.delete, steam_id, False)
        logger.info("Admin %s removed", steam_id)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_directory(
    settings: Settings,
    http: httpx.AsyncClient,
    store: Optional[LocalAdminStore] = None,
    clock: Callable[[], float] = time.time,
) -> AdminDirectory:
    """Wire the directory for the configured provider.

    store overrides the SQLite store built from ADMINS_DB_URL (tests pass an
    in-memory one).
    """
    mode = select_backend_mode(settings)
    seeds = parse_bootstrap_admins(settings)
    if mode == MODE_REMOTE and not settings.remote_directory_configured:
        raise ConfigurationError(
            "ADMINS_PROVIDER=remote requires DIRECTORY_URL and DIRECTORY_KEY (or the SUPABASE_* equivalents)."
        )
    local = store or LocalAdminStore(settings.admins_db_url, clock=clock)

    if mode == MODE_REMOTE:
        backend = remote_backend(settings, http, clock)
        logger.info("Admin directory: remote (%s.%s) with local mirror", settings.directory_schema, settings.directory_table)
        return AdminDirectory(mode, backend, mirror=local, seeds=seeds, clock=clock, local_store=local)

    logger.info("Admin directory: local (%s)", settings.admins_db_url)
    return AdminDirectory(mode, LocalAdminBackend(local), seeds=seeds, clock=clock, local_store=local)


def remote_backend(
    settings: Settings,
    http: httpx.AsyncClient,
    clock: Callable[[], float] = time.time,
) -> RemoteAdminBackend:
    return RemoteAdminBackend(
        http,
        settings.directory_url,
        settings.directory_key,
        table=settings.directory_table,
        schema=settings.directory_schema,
        timeout=settings.directory_timeout,
        clock=clock,
    )


async def check_remote_directory(settings: Settings, http: httpx.AsyncClient) -> DirectoryCheck:
    """Report whether the remote directory is configured and answering.

    Runs regardless of ADMINS_PROVIDER, so an operator can verify remote
    credentials before switching over. Never raises for backend trouble.
    """
    url_configured = bool(settings.directory_url)
    key_configured = bool(settings.directory_key)
    if not (url_configured and key_configured):
        return DirectoryCheck(
            url_configured,
            key_configured,
            message="DIRECTORY_URL and DIRECTORY_KEY (or the SUPABASE_* equivalents) are missing or incomplete.",
        )
    try:
        await remote_backend(settings, http).ping()
    except DIRECTORY_FAILURES as e:
        logger.warning("Remote directory check failed: %s", e.message)
        return DirectoryCheck(True, True, message=e.message, backend_status=getattr(e, "backend_status", None))
    return DirectoryCheck(True, True, remote_reachable=True)

"""
directory/bootstrap.py -- Parse the configured bootstrap admin seeds.

Three sources, applied in this order (later sources win per steam id):
  BOOTSTRAP_ADMIN_IDS    -- "id1, id2; id3" -- every id becomes a Developer.
  BOOTSTRAP_ADMIN_TABLE  -- rows "steamId|name|role", separated by newline or comma.
  BOOTSTRAP_ADMINS_JSON  -- [{"steamId": ..., "staffName"|"name": ..., "staffRole"|"role": ...}]

Entries with an invalid steam id are dropped. A later entry only overrides
the fields it actually sets.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable

from core.config import Settings
from core.models import is_valid_steam_id, read_text
from core.permissions import Role, normalize_role
from directory.models import DEFAULT_STAFF_NAME, AdminSeed, sanitize_staff_name

logger = logging.getLogger("steamauth.directory.bootstrap")

# (steam_id, staff_name, staff_role) with "" meaning "not specified"
_RawSeed = tuple[str, str, str]


def _parse_id_list(value: str) -> list[_RawSeed]:
    return [(entry, "", Role.DEVELOPER.value) for entry in re.split(r"[,;\s]+", value or "") if entry]


def _parse_table(value: str) -> list[_RawSeed]:
    rows = []
    for row in re.split(r"\r?\n|,", value or ""):
        row = row.strip()
        if not row:
            continue
        cells = [cell.strip() for cell in row.split("|")]
        cells += [""] * (3 - len(cells))
        rows.append((cells[0], cells[1], cells[2]))
    return rows


def _parse_json(value: str) -> list[_RawSeed]:
    raw = read_text(value)
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("BOOTSTRAP_ADMINS_JSON is not valid JSON; ignoring it")
        return []
    if not isinstance(parsed, list):
        logger.warning("BOOTSTRAP_ADMINS_JSON must be a JSON array; ignoring it")
        return []
    rows = []
    for entry in parsed:
        if not isinstance(entry, dict):
            continue
        rows.append(
            (
                read_text(entry.get("steamId") or entry.get("steam_id")),
                read_text(entry.get("staffName") or entry.get("name")),
                read_text(entry.get("staffRole") or entry.get("role")),
            )
        )
    return rows


def merge_seeds(entries: Iterable[_RawSeed]) -> list[AdminSeed]:
    """Merge raw seeds by steam id, keeping first-seen order."""
    merged: dict[str, tuple[str, str]] = {}
    for steam_id, name, role in entries:
        steam_id = read_text(steam_id)
        if not is_valid_steam_id(steam_id):
            if steam_id:
                logger.warning("Ignoring bootstrap admin with invalid steam id %r", steam_id)
            continue
        current_name, current_role = merged.get(steam_id, ("", ""))
        merged[steam_id] = (read_text(name) or current_name, read_text(role) or current_role)
    return [
        AdminSeed(
            steam_id=steam_id,
            staff_name=sanitize_staff_name(name, DEFAULT_STAFF_NAME),
            staff_role=normalize_role(role),
        )
        for steam_id, (name, role) in merged.items()
    ]


def parse_bootstrap_admins(settings: Settings) -> list[AdminSeed]:
    return merge_seeds(
        [
            *_parse_id_list(settings.bootstrap_admin_ids),
            *_parse_table(settings.bootstrap_admin_table),
            *_parse_json(settings.bootstrap_admins_json),
        ]
    )

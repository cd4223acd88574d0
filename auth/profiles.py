"""
auth/profiles.py -- Best-effort Steam profile lookups (display name, avatar).

Primary source: ISteamUser/GetPlayerSummaries/v2 (needs STEAM_API_KEY, at
most 100 ids per call). Fallback for anything still unresolved: the public
community XML profile, one request per id.

Every result is cached for profile_cache_ttl_seconds in an injected TTLCache.
Ids that neither source resolves are remembered for MISS_TTL_SECONDS, so a
private or deleted profile costs one XML request per minute, not one per
listing.
Nothing here ever raises to the caller -- profile enrichment must never fail
an otherwise valid login or admin listing.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Optional

import httpx

from cache.store import TTLCache
from core.models import SteamProfile, is_valid_steam_id, profile_url_for, read_text

logger = logging.getLogger("steamauth.profiles")

PLAYER_SUMMARIES_URL = "https://api.steampowered.com/ISteamUser/GetPlayerSummaries/v2/"
COMMUNITY_XML_URL = "https://steamcommunity.com/profiles/{steam_id}/?xml=1"
SUMMARY_BATCH_LIMIT = 100
MISS_TTL_SECONDS = 60


def read_xml_tag(xml: str, tag: str) -> str:
    """Return the text of <tag>, unwrapping CDATA. Empty string when absent."""
    if not xml or not tag:
        return ""
    name = re.escape(tag)
    cdata = re.search(rf"<{name}>\s*<!\[CDATA\[([\s\S]*?)\]\]>\s*</{name}>", xml, re.IGNORECASE)
    if cdata and cdata.group(1).strip():
        return cdata.group(1).strip()
    plain = re.search(rf"<{name}>\s*([^<]*?)\s*</{name}>", xml, re.IGNORECASE)
    if plain and plain.group(1).strip():
        return plain.group(1).strip()
    return ""


def _profile_from_summary(player: dict) -> Optional[SteamProfile]:
    steam_id = read_text(player.get("steamid"))
    if not is_valid_steam_id(steam_id):
        return None
    return SteamProfile(
        steam_id=steam_id,
        display_name=read_text(player.get("personaname"), steam_id),
        avatar=read_text(player.get("avatarfull") or player.get("avatarmedium") or player.get("avatar")),
        profile_url=profile_url_for(steam_id),
    )


class SteamProfileProvider:
    def __init__(
        self,
        http: httpx.AsyncClient,
        cache: TTLCache[SteamProfile],
        api_key: str = "",
        timeout: float = 5.0,
        misses: Optional[TTLCache[bool]] = None,
    ) -> None:
        self._http = http
        self.cache = cache
        self.misses: TTLCache[bool] = misses if misses is not None else TTLCache(ttl=MISS_TTL_SECONDS)
        self.api_key = api_key
        self.timeout = timeout

    async def fetch_many(self, steam_ids: Iterable[str]) -> dict[str, SteamProfile]:
        """Resolve as many ids as possible. Missing ids are simply absent."""
        ids: list[str] = []
        for raw in steam_ids:
            steam_id = read_text(raw)
            if is_valid_steam_id(steam_id) and steam_id not in ids:
                ids.append(steam_id)

        result: dict[str, SteamProfile] = {}
        pending: list[str] = []
        for steam_id in ids:
            cached = self.cache.get(steam_id)
            if cached is not None:
                result[steam_id] = cached
            elif not self.misses.get(steam_id):
                pending.append(steam_id)

        if pending and self.api_key:
            for start in range(0, len(pending), SUMMARY_BATCH_LIMIT):
                batch = pending[start : start + SUMMARY_BATCH_LIMIT]
                for profile in await self._fetch_summaries(batch):
                    self.cache.set(profile.steam_id, profile)
                    result[profile.steam_id] = profile

        for steam_id in pending:
            if steam_id in result:
                continue
            profile = await self._fetch_community_xml(steam_id)
            if profile is None:
                self.misses.set(steam_id, True)
                continue
            self.cache.set(steam_id, profile)
            result[steam_id] = profile

        return result

    async def fetch_one(self, steam_id: str) -> Optional[SteamProfile]:
        profiles = await self.fetch_many([steam_id])
        return profiles.get(read_text(steam_id))

    async def _fetch_summaries(self, batch: list[str]) -> list[SteamProfile]:
        try:
            resp = await self._http.get(
                PLAYER_SUMMARIES_URL,
                params={"key": self.api_key, "steamids": ",".join(batch)},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            if not resp.is_success:
                logger.warning("GetPlayerSummaries returned HTTP %d", resp.status_code)
                return []
            players = (resp.json().get("response") or {}).get("players") or []
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("GetPlayerSummaries failed for %d ids: %s", len(batch), e)
            return []

        wanted = set(batch)
        profiles = []
        for player in players:
            if not isinstance(player, dict):
                continue
            profile = _profile_from_summary(player)
            if profile is not None and profile.steam_id in wanted:
                profiles.append(profile)
        return profiles

    async def _fetch_community_xml(self, steam_id: str) -> Optional[SteamProfile]:
        try:
            resp = await self._http.get(
                COMMUNITY_XML_URL.format(steam_id=steam_id),
                headers={"Accept": "application/xml,text/xml;q=0.9,*/*;q=0.8"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.debug("Community profile fetch failed for %s: %s", steam_id, e)
            return None
        if not resp.is_success or not resp.text:
            return None

        xml = resp.text
        avatar = read_xml_tag(xml, "avatarFull") or read_xml_tag(xml, "avatarMedium") or read_xml_tag(xml, "avatarIcon")
        return SteamProfile(
            steam_id=steam_id,
            display_name=read_text(read_xml_tag(xml, "steamID"), steam_id),
            avatar=avatar,
            profile_url=profile_url_for(steam_id),
        )

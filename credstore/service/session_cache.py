from __future__ import annotations

import asyncio
import random
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from credstore.config import LastAccessTimeUpdates, Settings
from credstore.logging import get_logger
from credstore.service.geo import GeoResolver, NullGeoResolver
from credstore.service.tokens import is_expired, token_lifetime
from credstore.service.user_agent import RegexUserAgentParser, UserAgentParser
from credstore.storage.models import SESSION_TELEMETRY_FIELDS, SessionToken, utcnow


def to_cache_entry(token: SessionToken) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"token_id": token.token_id}
    for name in SESSION_TELEMETRY_FIELDS:
        value = getattr(token, name)
        entry[name] = value.isoformat() if isinstance(value, datetime) else value
    return entry


def overlay_entry(token: SessionToken, entry: Dict[str, Any]) -> SessionToken:
    """Return ``token`` with telemetry taken from a cached entry."""
    values = {name: entry[name] for name in SESSION_TELEMETRY_FIELDS if name in entry}
    last_access = values.get("last_access_time")
    if isinstance(last_access, str):
        values["last_access_time"] = datetime.fromisoformat(last_access)
    return replace(token, **values)


class SessionMetadataCache:
    """Best-effort overlay of last-access telemetry on top of durable session rows.

    Telemetry is only ever written to the metadata cache, one JSON array per
    uid. Durable rows keep the values from token creation. Nothing here may
    fail the caller: cache and geolocation errors are logged and absorbed.
    Concurrent updates for one uid are last-writer-wins.
    """

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        config: Optional[LastAccessTimeUpdates] = None,
        ua_parser: Optional[UserAgentParser] = None,
        geo: Optional[GeoResolver] = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.config = config or settings.last_access_time_updates()
        self.ua_parser = ua_parser or RegexUserAgentParser()
        self.geo = geo or NullGeoResolver()
        self.rng = rng
        self.logger = get_logger(__name__)

    def _updates_enabled(self, token: SessionToken) -> bool:
        if self.cache is None or not self.config.enabled:
            return False
        if self.rng() >= self.config.sample_rate:
            return False
        return self.config.allows_email(token.email)

    async def _resolve_location(self, ip: Optional[str]) -> Optional[Dict[str, Any]]:
        if not ip:
            return None
        try:
            return await asyncio.wait_for(
                self.geo.lookup(ip), timeout=self.settings.geo_timeout_seconds
            )
        except Exception as exc:
            self.logger.warning("geo_lookup_failed", error=str(exc))
            return None

    async def update_session_token(
        self,
        token: SessionToken,
        raw_user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Optional[List[Dict[str, Any]]]:
        """Refresh cached telemetry for ``token`` and return the array written.

        Returns ``None`` when updates are disabled for this token or the cache
        could not be read or written.
        """
        if not self._updates_enabled(token):
            return None

        updates: Dict[str, Any] = {"last_access_time": utcnow()}
        if raw_user_agent:
            updates.update(self.ua_parser.parse(raw_user_agent).as_token_fields())
        location = await self._resolve_location(ip)
        if location:
            updates["location"] = location
        entry = to_cache_entry(replace(token, **updates))

        try:
            entries = await self.cache.get_session_tokens(token.uid) or []
        except Exception as exc:
            # Writing without the sibling entries would clobber them
            self.logger.warning(
                "metadata_cache_read_failed", uid=token.uid, error=str(exc)
            )
            return None

        written = []
        replaced = False
        for existing in entries:
            if existing.get("token_id") == token.token_id:
                written.append(entry)
                replaced = True
            else:
                written.append(existing)
        if not replaced:
            written.append(entry)

        try:
            await self.cache.set_session_tokens(token.uid, written)
        except Exception as exc:
            self.logger.warning(
                "metadata_cache_write_failed", uid=token.uid, error=str(exc)
            )
            return None
        return written

    async def sessions(self, uid: str) -> List[SessionToken]:
        now = utcnow()
        durable = []
        for token in self.store.list_session_tokens(uid):
            lifetime = token_lifetime(token, self.settings)
            if is_expired(token, lifetime, now):
                continue
            durable.append(replace(token, lifetime=lifetime))
        if not durable or self.cache is None:
            return durable

        try:
            cached = await self.cache.get_session_tokens(uid)
        except Exception as exc:
            self.logger.warning("metadata_cache_read_failed", uid=uid, error=str(exc))
            return durable
        if not cached:
            return durable

        by_id = {entry.get("token_id"): entry for entry in cached}
        return [
            overlay_entry(token, by_id[token.token_id]) if token.token_id in by_id else token
            for token in durable
        ]

    async def evict(self, uid: str, token_id: str) -> None:
        if self.cache is None:
            return
        try:
            cached = await self.cache.get_session_tokens(uid)
            if not cached:
                return
            remaining = [e for e in cached if e.get("token_id") != token_id]
            if len(remaining) == len(cached):
                return
            if remaining:
                await self.cache.set_session_tokens(uid, remaining)
            else:
                await self.cache.delete_session_tokens(uid)
        except Exception as exc:
            self.logger.warning("metadata_cache_evict_failed", uid=uid, error=str(exc))

    async def clear(self, uid: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.delete_session_tokens(uid)
        except Exception as exc:
            self.logger.warning("metadata_cache_clear_failed", uid=uid, error=str(exc))

"""Session telemetry overlay: sampling, cache/durable asymmetry and failure handling."""

import asyncio
import re

from conftest import DESKTOP_FIREFOX_UA, MOBILE_FIREFOX_UA, FakeGeo
from credstore.config import LastAccessTimeUpdates
from credstore.service.session_cache import SessionMetadataCache


def _cache_with(store, cache, settings, geo=None, **config):
    return SessionMetadataCache(
        store,
        cache,
        settings,
        config=LastAccessTimeUpdates(**config),
        geo=geo or FakeGeo(),
        rng=lambda: 0.5,
    )


class TestUpdateGating:
    async def test_disabled_feature_writes_nothing(self, store, cache, settings, token_store, account):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        before = dict(cache.values)
        metadata = _cache_with(store, cache, settings, enabled=False)

        result = await metadata.update_session_token(issued.token, MOBILE_FIREFOX_UA, "10.0.0.1")

        assert result is None
        assert cache.values == before
        assert cache.writes == []

    async def test_sampled_out_writes_nothing(self, store, cache, settings, token_store, account):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        metadata = _cache_with(store, cache, settings, sample_rate=0.25)

        assert await metadata.update_session_token(issued.token, MOBILE_FIREFOX_UA) is None
        assert cache.writes == []

    async def test_email_outside_pattern_writes_nothing(
        self, store, cache, settings, token_store, account
    ):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        metadata = _cache_with(
            store, cache, settings, enabled_email_addresses=re.compile(r"@mozilla\.com$")
        )

        assert await metadata.update_session_token(issued.token, MOBILE_FIREFOX_UA) is None
        assert cache.writes == []

    async def test_matching_email_and_full_sample_rate_writes(
        self, store, cache, settings, token_store, account
    ):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        metadata = _cache_with(
            store, cache, settings, enabled_email_addresses=re.compile(r"@example\.com$")
        )

        written = await metadata.update_session_token(issued.token, MOBILE_FIREFOX_UA)

        assert [e["token_id"] for e in written] == [issued.token.token_id]
        assert cache.writes == [account.uid]


class TestOverlay:
    async def test_sessions_reflect_update_but_session_token_does_not(
        self, geo, session_cache, token_store, account
    ):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)

        await session_cache.update_session_token(issued.token, MOBILE_FIREFOX_UA, "63.245.221.32")

        sessions = await token_store.sessions(account.uid)
        assert len(sessions) == 1
        assert sessions[0].ua_browser == "Firefox Mobile"
        assert sessions[0].ua_os == "Android"
        assert sessions[0].ua_os_version == "4.4"
        assert sessions[0].ua_device_type == "mobile"
        assert sessions[0].location["country_code"] == "US"
        assert sessions[0].last_access_time >= issued.token.last_access_time
        assert geo.calls == ["63.245.221.32"]

        durable = await token_store.session_token(issued.token.token_id)
        assert durable.ua_browser == "Firefox"
        assert durable.ua_os == "Mac OS X"
        assert durable.ua_device_type is None
        assert durable.location is None

    async def test_update_preserves_sibling_sessions(self, cache, session_cache, token_store, account):
        first = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        second = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)

        await session_cache.update_session_token(first.token, MOBILE_FIREFOX_UA)
        written = await session_cache.update_session_token(second.token)

        assert [e["token_id"] for e in written] == [first.token.token_id, second.token.token_id]
        assert written[0]["ua_device_type"] == "mobile"

    async def test_repeated_update_replaces_entry(self, session_cache, token_store, account):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)

        await session_cache.update_session_token(issued.token, MOBILE_FIREFOX_UA)
        written = await session_cache.update_session_token(issued.token, DESKTOP_FIREFOX_UA)

        assert len(written) == 1
        assert written[0]["ua_device_type"] is None

    async def test_durable_rows_without_cache_entry_fall_back(self, session_cache, token_store, account):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)

        sessions = await session_cache.sessions(account.uid)

        assert sessions[0].token_id == issued.token.token_id
        assert sessions[0].ua_browser == "Firefox"

    async def test_concurrent_updates_keep_last_writer(self, cache, session_cache, token_store, account):
        tokens = [
            (await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)).token
            for _ in range(3)
        ]

        await asyncio.gather(*(session_cache.update_session_token(t) for t in tokens))

        cached = await cache.get_session_tokens(account.uid)
        assert tokens[-1].token_id in {e["token_id"] for e in cached}


class TestEviction:
    async def test_delete_leaves_n_minus_one_entries(self, cache, session_cache, token_store, account):
        tokens = [
            (await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)).token
            for _ in range(3)
        ]
        for token in tokens:
            await session_cache.update_session_token(token, MOBILE_FIREFOX_UA)
        before = await cache.get_session_tokens(account.uid)

        await token_store.delete_session_token(tokens[1])

        after = await cache.get_session_tokens(account.uid)
        assert len(after) == 2
        assert after == [before[0], before[2]]

    async def test_deleting_last_entry_removes_key(self, cache, session_cache, token_store, account):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        await session_cache.update_session_token(issued.token)

        await token_store.delete_session_token(issued.token)

        assert account.uid not in cache.values


class TestFailures:
    async def test_cache_read_failure_aborts_write(self, cache, session_cache, token_store, account):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        cache.fail_reads = True

        assert await session_cache.update_session_token(issued.token, MOBILE_FIREFOX_UA) is None
        assert cache.writes == []

    async def test_cache_write_failure_is_absorbed(self, cache, session_cache, token_store, account):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        cache.fail_writes = True

        assert await session_cache.update_session_token(issued.token) is None

    async def test_sessions_degrade_to_durable_on_cache_failure(
        self, cache, session_cache, token_store, account
    ):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        await session_cache.update_session_token(issued.token, MOBILE_FIREFOX_UA)
        cache.fail_reads = True

        sessions = await token_store.sessions(account.uid)

        assert sessions[0].ua_device_type is None

    async def test_geo_failure_still_writes_telemetry(self, store, cache, settings, token_store, account):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        metadata = _cache_with(store, cache, settings, geo=FakeGeo(error=TimeoutError("slow")))

        written = await metadata.update_session_token(issued.token, MOBILE_FIREFOX_UA, "10.0.0.1")

        assert written[0]["location"] is None
        assert written[0]["ua_device_type"] == "mobile"

    async def test_delete_survives_cache_outage(self, cache, token_store, account):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        cache.fail_reads = True

        await token_store.delete_session_token(issued.token)

        assert await token_store.sessions(account.uid) == []

    async def test_no_cache_configured(self, store, settings, token_store, account):
        issued = await token_store.create_session_token(account, DESKTOP_FIREFOX_UA)
        metadata = SessionMetadataCache(store, None, settings)

        assert await metadata.update_session_token(issued.token) is None
        assert len(await metadata.sessions(account.uid)) == 1

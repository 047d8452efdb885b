from datetime import timedelta
from itertools import chain, repeat

import pytest

from credstore.service.codes import (
    UNBLOCK_CODE_ALPHABET,
    OneTimeCodeManager,
    normalize_unblock_code,
)
from credstore.service.errors import (
    InvalidSigninCodeError,
    InvalidUnblockCodeError,
    StorageError,
    UnknownAccountError,
)


class TestUnblockCodes:
    async def test_code_shape(self, codes, account):
        code = await codes.create_unblock_code(account.uid)
        assert len(code) == 8
        assert set(code) <= set(UNBLOCK_CODE_ALPHABET)

    async def test_consume_once_then_127(self, codes, account):
        code = await codes.create_unblock_code(account.uid)

        await codes.consume_unblock_code(account.uid, code)

        with pytest.raises(InvalidUnblockCodeError) as exc:
            await codes.consume_unblock_code(account.uid, code)
        assert exc.value.errno == 127
        assert exc.value.message == "Invalid unblock code"

    async def test_consume_normalizes_input(self, codes, account):
        code = await codes.create_unblock_code(account.uid)
        sloppy = f" {code[:4].lower()}-{code[4:].lower()} "
        await codes.consume_unblock_code(account.uid, sloppy)

    async def test_new_code_replaces_old(self, codes, account):
        old = await codes.create_unblock_code(account.uid)
        new = await codes.create_unblock_code(account.uid)
        if old != new:
            with pytest.raises(InvalidUnblockCodeError):
                await codes.consume_unblock_code(account.uid, old)
        await codes.consume_unblock_code(account.uid, new)

    async def test_wrong_code_keeps_row(self, store, codes, account):
        code = await codes.create_unblock_code(account.uid)
        wrong = "0" * 8 if code != "0" * 8 else "1" * 8
        with pytest.raises(InvalidUnblockCodeError):
            await codes.consume_unblock_code(account.uid, wrong)
        assert store.get_unblock_code(account.uid) is not None

    async def test_expired_code_deleted(self, store, codes, account):
        code = await codes.create_unblock_code(account.uid)
        store.unblock_codes[account.uid].created_at -= timedelta(minutes=61)

        with pytest.raises(InvalidUnblockCodeError):
            await codes.consume_unblock_code(account.uid, code)
        assert store.get_unblock_code(account.uid) is None

    async def test_unknown_account(self, codes):
        with pytest.raises(UnknownAccountError):
            await codes.create_unblock_code("f" * 32)

    def test_normalization_maps_confusable_letters(self):
        assert normalize_unblock_code(" ab-cd io l ") == "ABCD101"


class TestSigninCodes:
    async def test_roundtrip_returns_email_and_flow(self, codes, account):
        code = await codes.create_signin_code(account.uid, flow_id="f" * 64)
        assert len(code) == 12

        consumed = await codes.consume_signin_code(code)

        assert consumed.uid == account.uid
        assert consumed.email == account.email
        assert consumed.flow_id == "f" * 64

    async def test_second_consume_fails_146(self, codes, account):
        code = await codes.create_signin_code(account.uid)
        await codes.consume_signin_code(code)

        with pytest.raises(InvalidSigninCodeError) as exc:
            await codes.consume_signin_code(code)
        assert exc.value.errno == 146
        assert exc.value.status_code == 400

    async def test_forced_collision_regenerates(self, store, settings, account):
        first = bytes.fromhex("aaaaaaaaaaaa")
        second = bytes.fromhex("bbbbbbbbbbbb")
        source = chain([first, first], repeat(second))
        codes = OneTimeCodeManager(store, settings, random_bytes=lambda size: next(source))

        code_a = await codes.create_signin_code(account.uid)
        code_b = await codes.create_signin_code(account.uid)

        assert code_a == "aaaaaaaaaaaa"
        assert code_b == "bbbbbbbbbbbb"
        assert len(store.signin_codes) == 2

    async def test_exhausted_attempts_raise_storage_error(self, store, settings, account):
        codes = OneTimeCodeManager(store, settings, random_bytes=lambda size: b"\x01" * size)
        await codes.create_signin_code(account.uid)

        with pytest.raises(StorageError):
            await codes.create_signin_code(account.uid)
        assert len(store.signin_codes) == 1

    async def test_expired_code_rejected(self, store, codes, account):
        code = await codes.create_signin_code(account.uid)
        for row in store.signin_codes.values():
            row.created_at -= timedelta(hours=3)

        with pytest.raises(InvalidSigninCodeError):
            await codes.consume_signin_code(code)

    @pytest.mark.parametrize("code", ["", "zz", "abcd", "a" * 13])
    async def test_malformed_code_rejected(self, codes, code):
        with pytest.raises(InvalidSigninCodeError):
            await codes.consume_signin_code(code)

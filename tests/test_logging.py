from conftest import make_account
from credstore.logging import (
    _redact_pii,
    credential_context,
    current_credential_context,
    hash_for_log,
)
from credstore.storage.models import TokenKind


def test_redacts_credentials_and_emails():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "token_created",
            "email": "someone@example.com",
            "token_id": "abcdef0123456789",
            "token_kind": "sessionToken",
            "uid": "u" * 32,
        },
    )
    assert event["email"] == "so***om"
    assert event["token_id"] == "ab***89"
    assert event["token_kind"] == "sessionToken"
    assert event["uid"] == "u" * 32


def test_key_material_is_fully_masked():
    event = _redact_pii(None, "info", {"wrap_wrap_kb": "f" * 64, "auth_key": "k" * 64})
    assert event["wrap_wrap_kb"] == "***"
    assert event["auth_key"] == "kk***kk"


def test_credential_context_binds_and_restores():
    with credential_context(uid="u" * 32):
        with credential_context(token_kind=TokenKind.SESSION.value):
            assert current_credential_context() == {
                "uid": "u" * 32,
                "token_kind": "sessionToken",
            }
        assert current_credential_context() == {"uid": "u" * 32}
    assert "uid" not in current_credential_context()


def test_credential_context_skips_unset_fields():
    with credential_context(uid=None, token_kind="keyFetchToken"):
        assert current_credential_context() == {"token_kind": "keyFetchToken"}


async def test_account_reset_logs_carry_uid_and_token_kind(store, token_store):
    account = make_account(store)
    forgot = await token_store.create_password_forgot_token(account)
    reset = await token_store.forgot_password_verified(forgot.token)
    seen = []

    async def clear(uid):
        seen.append(current_credential_context())

    token_store.metadata.clear = clear

    await token_store.reset_account(reset.token, {})

    assert seen == [{"uid": account.uid, "token_kind": TokenKind.ACCOUNT_RESET.value}]
    assert "uid" not in current_credential_context()


def test_hash_for_log_is_stable_and_short():
    assert hash_for_log("a@example.com") == hash_for_log("a@example.com")
    assert len(hash_for_log("a@example.com")) == 16

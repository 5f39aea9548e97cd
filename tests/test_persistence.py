"""wabridge – Persistence Tests.

Tests: tenant scoping, conversation upsert, messages, rules, encrypted
credentials, settings, retention, error translation.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from wabridge.core.crypto import ENCRYPTION_PREFIX, decrypt_value, encrypt_value
from wabridge.core.errors import PersistenceError
from wabridge.core.maintenance import run_data_retention_cleanup
from wabridge.core.models import Credential, Message
from wabridge.gateway.persistence import PersistenceService

JID = "6281234@s.whatsapp.net"


# ──────────────────────────────────────────
# Conversations & messages
# ──────────────────────────────────────────


class TestConversations:
    def test_upsert_creates_once(self, persistence) -> None:
        first_id, created = persistence.upsert_conversation("t1", JID, "Budi")
        second_id, created_again = persistence.upsert_conversation("t1", JID)
        assert created is True
        assert created_again is False
        assert first_id == second_id

    def test_same_jid_in_two_tenants(self, persistence) -> None:
        a, _ = persistence.upsert_conversation("t1", JID)
        b, created = persistence.upsert_conversation("t2", JID)
        assert created is True
        assert a != b

    def test_label_unknown_conversation(self, persistence) -> None:
        assert persistence.set_conversation_label("t1", JID, "vip") is False

    def test_broadcast_targets_filter_label_and_kind(self, persistence) -> None:
        persistence.upsert_conversation("t1", JID)
        persistence.upsert_conversation("t1", "999@lid")
        persistence.upsert_conversation("t1", "1203@g.us")
        persistence.upsert_conversation("t2", "6289@s.whatsapp.net")
        persistence.set_conversation_label("t1", "999@lid", "vip")

        assert persistence.list_broadcast_targets("t1") == [JID, "999@lid"]
        assert persistence.list_broadcast_targets("t1", "vip") == ["999@lid"]

    def test_create_message(self, persistence) -> None:
        conv_id, _ = persistence.upsert_conversation("t1", JID)
        message_id = persistence.create_message(
            "t1", conv_id, key_id="K1", from_me=False, sender_jid=JID, sender_name="Budi", kind="text", body="halo"
        )
        assert message_id > 0

    def test_outbound_message_creates_conversation(self, persistence) -> None:
        persistence.record_outbound_message("t1", JID, "Terima kasih")
        assert persistence.list_broadcast_targets("t1") == [JID]


class TestRetention:
    def test_purge_old_messages(self, persistence) -> None:
        conv_id, _ = persistence.upsert_conversation("t1", JID)
        old = persistence.create_message("t1", conv_id, key_id="old", from_me=False, sender_jid=JID,
                                         sender_name=None, kind="text", body="lama")
        persistence.create_message("t1", conv_id, key_id="new", from_me=False, sender_jid=JID,
                                   sender_name=None, kind="text", body="baru")
        with persistence._session("age") as db:
            row = db.get(Message, old)
            row.created_at = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=10)

        assert persistence.purge_messages_older_than(7) == 1

    @pytest.mark.anyio
    async def test_cleanup_swallows_store_errors(self) -> None:
        broken = MagicMock()
        broken.purge_messages_older_than.side_effect = PersistenceError("db down")
        assert await run_data_retention_cleanup(broken, 7) == 0


# ──────────────────────────────────────────
# Rules, settings, credentials
# ──────────────────────────────────────────


class TestRulesAndSettings:
    def test_rule_upsert_and_delete(self, persistence) -> None:
        persistence.upsert_auto_reply_rule("t1", "harga", "50rb")
        persistence.upsert_auto_reply_rule("t1", "harga", "60rb")
        assert persistence.list_auto_reply_rules("t1") == [("harga", "60rb")]
        assert persistence.list_auto_reply_rules("t2") == []
        assert persistence.delete_auto_reply_rule("t1", "harga") is True
        assert persistence.delete_auto_reply_rule("t1", "harga") is False

    def test_settings(self, persistence) -> None:
        persistence.upsert_setting("t1", "ai_active", "true")
        persistence.upsert_setting("t1", "ai_active", "false")
        assert persistence.get_setting("t1", "ai_active") == "false"
        assert persistence.get_setting("t2", "ai_active", "x") == "x"
        assert persistence.get_settings_map("t1") == {"ai_active": "false"}


class TestCredentials:
    def test_stored_encrypted(self, persistence) -> None:
        persistence.save_credentials("t1", '{"noise": "key"}')
        with persistence._session("peek") as db:
            raw = db.get(Credential, ("t1", "creds")).data
        assert raw.startswith(ENCRYPTION_PREFIX)
        assert persistence.load_credentials("t1") == '{"noise": "key"}'

    def test_tenants_with_credentials(self, persistence) -> None:
        persistence.save_credentials("b", "x")
        persistence.save_credentials("a", "y")
        persistence.save_credentials("a", "z", slot="pre-key-1")
        assert persistence.list_tenants_with_credentials() == ["a", "b"]
        assert persistence.delete_credentials("a") == 2
        assert persistence.list_tenants_with_credentials() == ["b"]

    def test_undecryptable_blob(self, persistence) -> None:
        with persistence._session("tamper") as db:
            db.add(Credential(tenant_id="t1", slot="creds", data=f"{ENCRYPTION_PREFIX}garbage"))
        with pytest.raises(PersistenceError):
            persistence.load_credentials("t1")

    def test_crypto_helpers(self) -> None:
        token = encrypt_value("secret")
        assert token != "secret"
        assert encrypt_value(token) == token
        assert decrypt_value(token) == "secret"
        assert decrypt_value("plain") == "plain"


class TestErrors:
    def test_sqlalchemy_errors_become_persistence_errors(self) -> None:
        session = MagicMock()
        session.query.side_effect = OperationalError("SELECT 1", {}, Exception("db gone"))
        service = PersistenceService(session_factory=lambda: session)

        with pytest.raises(PersistenceError):
            service.list_auto_reply_rules("t1")
        session.rollback.assert_called_once()
        session.close.assert_called_once()

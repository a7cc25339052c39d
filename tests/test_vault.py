"""
Tests for the CredentialVault operation surface.

Covers record CRUD, filtering, attachments, bulk import, encrypted
export/import and key-equivalent unlock slots.
"""
import sqlite3

import orjson
import pytest

from aegis_vault.data import RecordDraft, RecordFilter
from aegis_vault.exceptions import (
    AttachmentTooLarge,
    AuthenticationFailed,
    DecryptionFailed,
    InvalidExport,
    NotFound,
)
from aegis_vault.vault import CredentialVault

from .conftest import DEVICE_SECRET, PASSPHRASE


def _corrupt_secret(path, record_id):
    """Flip one ciphertext hex digit directly in the database."""
    conn = sqlite3.connect(str(path))
    (ciphertext,) = conn.execute(
        "SELECT encrypted_secret FROM records WHERE id = ?", (record_id,)
    ).fetchone()
    flipped = ("1" if ciphertext[0] == "0" else "0") + ciphertext[1:]
    conn.execute("UPDATE records SET encrypted_secret = ? WHERE id = ?", (flipped, record_id))
    conn.commit()
    conn.close()


class TestRecords:

    def test_github_scenario(self, vault_path, fast_config):
        vault = CredentialVault(vault_path, config=fast_config)
        vault.unlock(PASSPHRASE, DEVICE_SECRET)
        rid = vault.create_record(RecordDraft(title="Github", password="token_123"))
        vault.lock()
        vault.unlock(PASSPHRASE, DEVICE_SECRET)
        [view] = vault.list_records(query="git")
        assert view.id == rid
        assert view.password == "token_123"
        vault.close()

    def test_no_plaintext_at_rest(self, vault, vault_path, github_id):
        vault.lock()
        assert b"token_123" not in vault_path.read_bytes()

    def test_get_record(self, vault, github_id):
        view = vault.get_record(github_id)
        assert view.title == "Github"
        assert view.username == "octo"
        assert view.strength == 72
        with pytest.raises(NotFound):
            vault.get_record("missing")

    def test_untitled_default(self, vault):
        rid = vault.create_record(RecordDraft(password="x"))
        assert vault.get_record(rid).title == "Untitled"

    def test_record_without_secret(self, vault):
        rid = vault.create_record(RecordDraft(title="Note only"))
        view = vault.get_record(rid)
        assert view.password is None
        assert view.decrypt_failed is False
        assert view.strength == 0

    def test_update_keeps_secret_unless_given(self, vault, github_id):
        before = vault._store.get_record(github_id).encrypted_secret
        vault.update_record(github_id, RecordDraft(title="GitHub", username="octocat"))
        assert vault._store.get_record(github_id).encrypted_secret == before
        vault.update_record(github_id, {"password": "longer-token-456"})
        view = vault.get_record(github_id)
        assert view.title == "GitHub"
        assert view.password == "longer-token-456"
        assert view.strength == 100

    def test_partial_update_keeps_omitted_fields(self, vault, github_id):
        vault.update_record(github_id, {"password": "rotated-token"})
        view = vault.get_record(github_id)
        assert view.username == "octo"
        assert view.website == "github.com"
        assert view.category == "Dev"
        assert view.tags == {"work"}
        vault.update_record(github_id, RecordDraft(tags=set(), category="General"))
        view = vault.get_record(github_id)
        assert view.tags == set()
        assert view.category == "General"
        assert view.username == "octo"
        assert view.password == "rotated-token"

    def test_update_unknown(self, vault):
        with pytest.raises(NotFound):
            vault.update_record("missing", RecordDraft(title="x"))

    def test_fresh_nonce_per_write(self, vault, github_id):
        before = vault._store.get_record(github_id).encrypted_secret
        vault.update_record(github_id, RecordDraft(title="Github", password="token_123"))
        after = vault._store.get_record(github_id).encrypted_secret
        assert before.nonce != after.nonce
        assert before.ciphertext != after.ciphertext

    def test_breach_count(self, vault, github_id):
        vault.set_breach_count(github_id, 12)
        assert vault.get_record(github_id).pwned_count == 12


class TestListing:

    @pytest.fixture
    def populated(self, vault):
        vault.create_record(RecordDraft(title="Github", category="Dev", tags={"work"}, password="a"))
        vault.create_record(RecordDraft(title="Gmail", website="mail.google.com",
                                        category="Email", password="b"))
        vault.create_record(RecordDraft(title="Bank", category="Finance", tags={"money"},
                                        password="c"))
        return vault

    def test_subsequence_query(self, populated):
        assert [v.title for v in populated.list_records(query="gml")] == ["Gmail"]
        assert [v.title for v in populated.list_records(query="G H")] == ["Github"]
        assert {v.title for v in populated.list_records(query="")} == {"Bank", "Github", "Gmail"}

    def test_query_matches_tags_and_category(self, populated):
        assert [v.title for v in populated.list_records(query="money")] == ["Bank"]
        assert [v.title for v in populated.list_records(query="FINANCE")] == ["Bank"]

    def test_category_and_tag_filters(self, populated):
        assert [v.title for v in populated.list_records(category="Email")] == ["Gmail"]
        assert [v.title for v in populated.list_records(RecordFilter(tag="work"))] == ["Github"]

    def test_decrypt_failure_is_isolated(self, vault, vault_path):
        good = vault.create_record(RecordDraft(title="Good", password="fine"))
        bad = vault.create_record(RecordDraft(title="Bad", password="broken"))
        _corrupt_secret(vault_path, bad)
        views = {v.id: v for v in vault.list_records()}
        assert views[good].password == "fine"
        assert views[bad].password is None
        assert views[bad].decrypt_failed is True
        with pytest.raises(DecryptionFailed):
            vault.get_record(bad)


class TestAttachments:

    def test_add_and_read(self, vault, github_id):
        aid = vault.add_attachment(github_id, b"%PDF-1.7 data", "doc.pdf", "application/pdf")
        assert vault.read_attachment(aid) == b"%PDF-1.7 data"
        [ref] = vault.get_record(github_id).attachments
        assert ref.id == aid
        assert ref.size == 13
        assert ref.mime_type == "application/pdf"
        assert [a.id for a in vault._store.list_attachments(github_id)] == [aid]

    @pytest.mark.parametrize("operation", [
        lambda v, rid: v.move_to_trash(rid),
        lambda v, rid: (v.move_to_trash(rid), v.restore(rid)),
        lambda v, rid: v.update_record(rid, RecordDraft(title="Renamed", password="new")),
        lambda v, rid: v.set_breach_count(rid, 3),
        lambda v, rid: v.add_attachment(rid, b"second", "b.txt"),
    ], ids=["trash", "restore", "update", "breach-count", "second-attachment"])
    def test_attachment_survives_record_writes(self, vault, github_id, operation):
        aid = vault.add_attachment(github_id, b"kept bytes", "a.txt")
        operation(vault, github_id)
        assert vault.read_attachment(aid) == b"kept bytes"
        assert aid in [ref.id for ref in vault._store.get_record(github_id).attachments]

    def test_removing_one_attachment_keeps_siblings(self, vault, github_id):
        first = vault.add_attachment(github_id, b"first", "a.txt")
        second = vault.add_attachment(github_id, b"second", "b.txt")
        vault.remove_attachment(first)
        assert vault.read_attachment(second) == b"second"
        assert [ref.id for ref in vault.get_record(github_id).attachments] == [second]

    def test_oversized_rejected_without_write(self, vault, github_id, monkeypatch):
        calls = []
        monkeypatch.setattr(
            vault._session.cipher, "encrypt_blob", lambda data: calls.append(len(data))
        )
        with pytest.raises(AttachmentTooLarge) as exc:
            vault.add_attachment(github_id, bytes(60 * 1024 * 1024), "big.bin")
        assert exc.value.limit == 50 * 1024 * 1024
        assert calls == []
        assert vault._store.list_attachments() == []
        assert vault.get_record(github_id).attachments == []

    def test_unknown_record(self, vault):
        with pytest.raises(NotFound):
            vault.add_attachment("missing", b"x", "x.txt")

    def test_remove(self, vault, github_id):
        aid = vault.add_attachment(github_id, b"x", "x.txt")
        vault.remove_attachment(aid)
        assert vault.get_record(github_id).attachments == []
        with pytest.raises(NotFound):
            vault.read_attachment(aid)
        with pytest.raises(NotFound):
            vault.remove_attachment(aid)


class TestBulkImport:

    def test_report(self, vault):
        report = vault.bulk_import([
            RecordDraft(title="Strong", password="correct horse battery"),
            {"title": "Weak", "password": "1234"},
            RecordDraft(title="No secret"),
            RecordDraft(password="untitled-secret"),
        ])
        assert report.total == 4
        assert report.weak == 1
        assert report.missing_fields == 2
        titles = {v.title for v in vault.list_records()}
        assert titles == {"Strong", "Weak", "Imported Entry"}
        assert vault.get_record(report.weak_ids[0]).title == "Weak"


class TestEncryptedExport:

    def test_bundle_is_still_encrypted(self, vault, github_id):
        vault.add_attachment(github_id, b"attached-plaintext", "a.txt")
        blob = vault.export_encrypted()
        assert b"token_123" not in blob
        assert b"attached-plaintext" not in blob
        bundle = orjson.loads(blob)
        assert bundle["format"] == "aegis-vault-export"
        assert len(bundle["records"]) == 1
        assert len(bundle["attachments"]) == 1

    def test_import_into_same_vault_replaces(self, vault, github_id):
        aid = vault.add_attachment(github_id, b"blob", "a.txt")
        blob = vault.export_encrypted()
        vault.update_record(github_id, RecordDraft(title="Changed", password="other"))
        assert vault.import_encrypted(blob) == 1
        view = vault.get_record(github_id)
        assert view.title == "Github"
        assert view.password == "token_123"
        assert vault.read_attachment(aid) == b"blob"

    def test_import_from_other_vault(self, vault, github_id, tmp_path, fast_config):
        blob = vault.export_encrypted()
        other = CredentialVault(tmp_path / "other.db", config=fast_config)
        other.unlock("other-pass", "other-device")
        try:
            with pytest.raises(AuthenticationFailed):
                other.import_encrypted(blob)
            assert other.import_encrypted(blob, PASSPHRASE, DEVICE_SECRET) == 1
            assert other.get_record(github_id).password == "token_123"
        finally:
            other.close()

    def test_import_all_or_nothing(self, vault, vault_path, tmp_path, fast_config):
        vault.create_record(RecordDraft(title="Good", password="fine"))
        bad = vault.create_record(RecordDraft(title="Bad", password="broken"))
        _corrupt_secret(vault_path, bad)
        blob = vault.export_encrypted()
        other = CredentialVault(tmp_path / "other.db", config=fast_config)
        other.unlock("other-pass", "other-device")
        try:
            with pytest.raises(DecryptionFailed):
                other.import_encrypted(blob, PASSPHRASE, DEVICE_SECRET)
            assert other.list_records() == []
        finally:
            other.close()

    @pytest.mark.parametrize("blob", [
        b"not json",
        b"[]",
        orjson.dumps({"format": "something-else"}),
        orjson.dumps({"format": "aegis-vault-export", "version": 1}),
    ])
    def test_malformed_bundle(self, vault, blob):
        with pytest.raises(InvalidExport):
            vault.import_encrypted(blob)


class TestUnlockKeys:

    def test_enroll_and_unlock(self, vault, github_id):
        slot_id = vault.enroll_unlock_key(b"\x11" * 32, label="laptop passkey")
        assert [s.id for s in vault.list_unlock_keys()] == [slot_id]
        vault.lock()
        vault.unlock_with_key(b"\x11" * 32)
        assert vault.get_record(github_id).password == "token_123"

    def test_wrong_secret(self, vault):
        vault.enroll_unlock_key(b"\x11" * 32)
        vault.lock()
        with pytest.raises(AuthenticationFailed):
            vault.unlock_with_key(b"\x22" * 32)
        assert not vault.is_unlocked

    def test_slots_revoked_by_rotation(self, vault):
        vault.enroll_unlock_key(b"\x11" * 32)
        report = vault.rotate_passphrase(PASSPHRASE, "new-pass", DEVICE_SECRET)
        assert report.slots_revoked == 1
        vault.lock()
        with pytest.raises(AuthenticationFailed):
            vault.unlock_with_key(b"\x11" * 32)


class TestDestroy:

    def test_destroy_removes_file(self, vault, vault_path, github_id):
        assert vault_path.exists()
        vault.destroy()
        assert not vault.is_unlocked
        assert not vault_path.exists()

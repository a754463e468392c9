"""Tests for export envelopes and the CSV/JSON interchange formats."""
import base64
import json
import re

import pytest

from journalstore.exchange import (
    ExportRecord,
    csv_to_records,
    decrypt_document,
    encrypt_document,
    is_encrypted,
    json_to_records,
    parse_timestamp,
    records_to_csv,
    records_to_json,
)
from journalstore.errors import CryptoError, FormatError

B64 = r"[A-Za-z0-9+/]+={0,2}"
EXPORT_RE = re.compile(rf"^ENCRYPTED:aes-256-gcm:{B64}:{B64}:{B64}:{B64}$")


class TestExportEnvelope:

    def test_wire_format(self):
        sealed = encrypt_document("Date,Content\n2024-01-01,hi\n", "abc12345")
        assert EXPORT_RE.match(sealed)
        salt, iv, tag = (base64.b64decode(p) for p in sealed.split(":")[2:5])
        assert len(salt) == 16 and len(iv) == 16 and len(tag) == 16

    @pytest.mark.parametrize("document", ["", "{}", "a,b\n1,2\n", "ünïcødé ✓\n" * 50])
    def test_round_trip(self, document):
        assert decrypt_document(encrypt_document(document, "abc12345"), "abc12345") == document

    def test_fresh_salt_and_iv_each_call(self):
        first = encrypt_document("same", "abc12345").split(":")
        second = encrypt_document("same", "abc12345").split(":")
        assert first[2] != second[2]
        assert first[3] != second[3]

    def test_wrong_password(self):
        sealed = encrypt_document("secret", "abc12345")
        with pytest.raises(CryptoError) as excinfo:
            decrypt_document(sealed, "wrong-password")
        assert "incorrect password or corrupted file" in str(excinfo.value)

    def test_corrupted_payload_is_indistinguishable_from_wrong_password(self):
        parts = encrypt_document("secret", "abc12345").split(":")
        ct = bytearray(base64.b64decode(parts[5]))
        ct[0] ^= 0xFF
        parts[5] = base64.b64encode(bytes(ct)).decode()
        with pytest.raises(CryptoError) as corrupted:
            decrypt_document(":".join(parts), "abc12345")
        with pytest.raises(CryptoError) as wrong:
            decrypt_document(encrypt_document("secret", "abc12345"), "nope")
        assert str(corrupted.value) == str(wrong.value)

    def test_bad_base64_is_a_crypto_error(self):
        parts = encrypt_document("secret", "abc12345").split(":")
        parts[3] = "!!!not-base64!!!"
        with pytest.raises(CryptoError):
            decrypt_document(":".join(parts), "abc12345")

    @pytest.mark.parametrize("envelope", [
        "plain csv text",
        "ENCRYPTED:aes-128-cbc:a:b:c:d",
        "SEALED:aes-256-gcm:a:b:c:d",
        "ENCRYPTED:aes-256-gcm:a:b:c",
        "ENCRYPTED:aes-256-gcm:a:b:c:d:e",
    ])
    def test_format_errors(self, envelope):
        with pytest.raises(FormatError):
            decrypt_document(envelope, "abc12345")

    def test_empty_password_rejected(self):
        with pytest.raises(ValueError):
            encrypt_document("doc", "")

    def test_is_encrypted_prefix_only(self):
        assert is_encrypted("ENCRYPTED:aes-256-gcm:whatever")
        assert not is_encrypted("ENCRYPTED:other")
        assert not is_encrypted("Date,Content")

    def test_independent_of_at_rest_envelopes(self, codec):
        at_rest = codec.encrypt("hello")
        assert not is_encrypted(at_rest)
        with pytest.raises(FormatError):
            decrypt_document(at_rest, "abc12345")
        assert not codec.is_envelope(encrypt_document("hello", "abc12345"))


class TestTimestamps:

    def test_iso_is_kept(self):
        assert parse_timestamp("2024-03-05T10:11:12.345000+00:00") == "2024-03-05T10:11:12.345000+00:00"
        assert parse_timestamp("2024-03-05T10:11:12.000Z") == "2024-03-05T10:11:12.000Z"

    def test_legacy_format(self):
        assert parse_timestamp("05-03-2024::10:11:12") == "2024-03-05T10:11:12+00:00"

    @pytest.mark.parametrize("value", ["", "yesterday", "31-02-2024::10:00:00"])
    def test_unparseable_falls_back_to_now(self, value):
        assert parse_timestamp(value).startswith("20")
        assert parse_timestamp(value) != value


class TestCsv:

    def test_round_trip_with_quotes_and_newlines(self):
        records = [
            ExportRecord("2024-01-01", 'She said "hi",\nthen left', "happy",
                         "2024-01-01T08:00:00+00:00", "2024-01-01T09:00:00+00:00"),
            ExportRecord("2024-01-02", "plain", None,
                         "2024-01-02T08:00:00+00:00", "2024-01-02T08:00:00+00:00"),
        ]
        parsed, skipped = csv_to_records(records_to_csv(records))
        assert skipped == 0
        assert parsed == records

    def test_four_column_legacy_file(self):
        text = (
            "Date,Content,Created At,Updated At\n"
            '2024-01-01,"hello, world",01-01-2024::08:00:00,01-01-2024::09:30:00\n'
        )
        (record,), skipped = csv_to_records(text)
        assert skipped == 0
        assert record.content == "hello, world"
        assert record.mood is None
        assert record.updated_at == "2024-01-01T09:30:00+00:00"

    def test_incomplete_rows_are_skipped(self):
        text = (
            "Date,Content,Mood,Created At,Updated At\n"
            "2024-01-01,ok,,2024-01-01T00:00:00,2024-01-01T00:00:00\n"
            "2024-01-02,too,short\n"
            ",no date,,2024-01-01T00:00:00,2024-01-01T00:00:00\n"
            "2024-01-04,,,2024-01-01T00:00:00,2024-01-01T00:00:00\n"
        )
        records, skipped = csv_to_records(text)
        assert [r.date for r in records] == ["2024-01-01"]
        assert skipped == 3

    def test_header_only_is_rejected(self):
        with pytest.raises(FormatError):
            csv_to_records("Date,Content,Mood,Created At,Updated At\n")


class TestJson:

    def test_round_trip(self):
        records = [ExportRecord("2024-01-01", "  spaced  ", "calm",
                                "2024-01-01T08:00:00+00:00", "2024-01-01T08:00:00+00:00")]
        text = records_to_json(records)
        assert json.loads(text)["version"] == 1
        parsed, skipped = json_to_records(text)
        assert parsed == records and skipped == 0

    def test_bare_list_and_skips(self):
        text = json.dumps([
            {"date": "2024-01-01", "content": "x"},
            {"date": "", "content": "no date"},
            "garbage",
        ])
        records, skipped = json_to_records(text)
        assert len(records) == 1 and skipped == 2

    @pytest.mark.parametrize("text", ["not json", '{"entries": 3}', "42"])
    def test_invalid_documents(self, text):
        with pytest.raises(FormatError):
            json_to_records(text)

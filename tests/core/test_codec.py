"""Tests for MonetaryFieldCodec."""
import logging

import pytest
from bson import ObjectId

from finledger.core.exceptions import DecryptionError
from finledger.services.codec import ENCRYPTED_FIELDS_KEY, MonetaryFieldCodec, format_amount


def test_format_amount():
    assert format_amount(100) == "100.0"
    assert format_amount(12.3456) == "12.35"
    assert format_amount(" 7.5 ") == "7.5"
    with pytest.raises(ValueError):
        format_amount("seven")
    with pytest.raises(ValueError):
        format_amount(True)


class TestEncode:
    def test_encodes_designated_fields_only(self, codec, cipher):
        doc = codec.encode_document({"amount": 100.0, "source": "Salary"}, ("amount",))
        assert doc["source"] == "Salary"
        assert doc["amount"] != 100.0
        assert cipher.decrypt(doc["amount"]) == "100.0"
        assert doc[ENCRYPTED_FIELDS_KEY] == ["amount"]

    def test_none_fields_are_left_alone(self, codec):
        doc = codec.encode_document({"amount": 10, "actual_amount": None}, ("amount", "actual_amount"))
        assert doc["actual_amount"] is None
        assert doc[ENCRYPTED_FIELDS_KEY] == ["amount"]

    def test_persisting_twice_does_not_double_encrypt(self, codec):
        once = codec.encode_document({"amount": 10}, ("amount",))
        twice = codec.encode_document(once, ("amount",))
        assert twice["amount"] == once["amount"]
        assert codec.decode_document(twice, ("amount",))["amount"] == 10.0


class TestDecode:
    def test_round_trip(self, codec):
        doc = codec.encode_document({"amount": 99.99}, ("amount",))
        assert codec.decode_document(doc, ("amount",))["amount"] == 99.99

    def test_untagged_legacy_plaintext(self, codec):
        assert codec.decode_document({"amount": "1500"}, ("amount",))["amount"] == 1500.0
        assert codec.decode_document({"amount": 1500}, ("amount",))["amount"] == 1500.0

    def test_untagged_legacy_blob(self, codec, cipher):
        doc = {"amount": cipher.encrypt("321.5")}
        assert codec.decode_document(doc, ("amount",))["amount"] == 321.5

    def test_null_policy_returns_none_and_logs(self, codec, caplog):
        doc_id = ObjectId()
        doc = {"_id": doc_id, "amount": "A" * 132, ENCRYPTED_FIELDS_KEY: ["amount"]}
        with caplog.at_level(logging.WARNING):
            decoded = codec.decode_document(doc, ("amount",), "incomes")
        assert decoded["amount"] is None
        record = caplog.records[-1]
        assert record.collection == "incomes"
        assert record.document_id == str(doc_id)
        assert record.field == "amount"

    def test_raise_policy_propagates(self, cipher):
        codec = MonetaryFieldCodec(cipher, failure_policy="raise")
        with pytest.raises(DecryptionError):
            codec.decode_document({"amount": "A" * 132}, ("amount",))

    def test_non_numeric_plaintext_is_a_decryption_failure(self, cipher):
        codec = MonetaryFieldCodec(cipher, failure_policy="raise")
        with pytest.raises(DecryptionError):
            codec.decode_document({"amount": cipher.encrypt("lots")}, ("amount",))

    def test_one_corrupt_record_does_not_abort_listing(self, codec):
        good = codec.encode_document({"_id": ObjectId(), "amount": 10}, ("amount",))
        bad = {"_id": ObjectId(), "amount": "B" * 132, ENCRYPTED_FIELDS_KEY: ["amount"]}
        decoded = codec.decode_many([good, bad, good], ("amount",), "incomes")
        assert [doc["amount"] for doc in decoded] == [10.0, None, 10.0]

    def test_unknown_policy_is_rejected(self, cipher):
        with pytest.raises(ValueError):
            MonetaryFieldCodec(cipher, failure_policy="ignore")

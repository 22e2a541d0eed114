"""
Monetary field codec.

Repositories call this explicitly on every write (encode) and every read
(decode). Amount fields go to storage as envelope blobs and come back as
floats. Each document the codec writes carries ``encrypted_fields``, the
list of its fields that hold blobs; documents without that list predate the
codec and fall back to the structural classifier.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from finledger.core.crypto import Encrypted, EnvelopeCipher, classify
from finledger.core.exceptions import DecryptionError

logger = logging.getLogger(__name__)

ENCRYPTED_FIELDS_KEY = "encrypted_fields"

POLICY_NULL = "null"
POLICY_RAISE = "raise"


def format_amount(value: Any) -> str:
    """Canonical decimal text for an amount before it is encrypted."""
    if isinstance(value, bool):
        raise ValueError("Amount cannot be a boolean")
    if isinstance(value, (int, float)):
        return repr(round(float(value), 2))
    text = str(value).strip()
    float(text)  # must parse
    return text


def parse_amount(text: str) -> float:
    value = float(text)
    if value != value or value in (float("inf"), float("-inf")):
        raise ValueError(f"Amount is not finite: {text!r}")
    return value


class MonetaryFieldCodec:
    """Encrypts amount fields on write and decrypts them on read.

    ``failure_policy`` decides what a read does with a field that cannot be
    decrypted: "null" replaces it with None and logs a warning so one broken
    record does not take a whole listing down; "raise" propagates the
    DecryptionError.
    """

    def __init__(self, cipher: EnvelopeCipher, failure_policy: str = POLICY_NULL):
        if failure_policy not in (POLICY_NULL, POLICY_RAISE):
            raise ValueError(f"Unknown decryption failure policy: {failure_policy}")
        self.cipher = cipher
        self.failure_policy = failure_policy

    @classmethod
    def from_settings(cls, settings) -> "MonetaryFieldCodec":
        return cls(EnvelopeCipher.from_settings(settings), settings.DECRYPT_FAILURE_POLICY)

    # ===== WRITE PATH =====

    def encode_fields(
        self,
        values: Dict[str, Any],
        fields: Iterable[str],
        already_encrypted: Iterable[str] = (),
    ) -> Tuple[Dict[str, Any], List[str]]:
        """
        Encrypt the designated fields present in ``values``.

        Fields listed in ``already_encrypted`` hold blobs and are left as they
        are, so persisting the same document twice never double-encrypts.
        Returns the encoded mapping and the fields that now hold blobs.
        """
        encoded = dict(values)
        skip = set(already_encrypted)
        written: List[str] = []
        for field in fields:
            if field not in encoded or encoded[field] is None:
                continue
            if field not in skip:
                encoded[field] = self.cipher.encrypt(format_amount(encoded[field]))
            written.append(field)
        return encoded, written

    def encode_document(self, doc: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
        """Encode a whole document for insertion and tag its blob fields."""
        encoded, written = self.encode_fields(doc, fields, doc.get(ENCRYPTED_FIELDS_KEY) or ())
        encoded[ENCRYPTED_FIELDS_KEY] = sorted(written)
        return encoded

    # ===== READ PATH =====

    def decode_value(self, raw: Any, tagged: Optional[bool] = None) -> Optional[float]:
        """Decode one stored amount; raises DecryptionError on failure."""
        if raw is None:
            return None
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return float(raw)

        stored = classify(raw, tagged)
        text = self.cipher.decrypt(stored.blob) if isinstance(stored, Encrypted) else stored.value
        try:
            return parse_amount(text)
        except ValueError as exc:
            raise DecryptionError(f"Stored amount is not a number: {exc}") from exc

    def decode_document(
        self,
        doc: Optional[Dict[str, Any]],
        fields: Iterable[str],
        collection: str = "",
    ) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None

        decoded = dict(doc)
        tags = doc.get(ENCRYPTED_FIELDS_KEY)
        for field in fields:
            if field not in decoded:
                continue
            tagged = None if tags is None else field in tags
            try:
                decoded[field] = self.decode_value(decoded[field], tagged)
            except DecryptionError as exc:
                if self.failure_policy == POLICY_RAISE:
                    raise
                logger.warning(
                    "Could not decrypt monetary field, returning null",
                    extra={
                        "collection": collection,
                        "document_id": str(doc.get("_id")),
                        "field": field,
                        "error": str(exc),
                    },
                )
                decoded[field] = None
        return decoded

    def decode_many(
        self,
        docs: Iterable[Dict[str, Any]],
        fields: Iterable[str],
        collection: str = "",
    ) -> List[Dict[str, Any]]:
        fields = tuple(fields)
        return [self.decode_document(doc, fields, collection) for doc in docs]

"""Tests for settings, cipher construction from settings and logging setup."""
import base64
import json
import logging

import pytest
from pydantic import ValidationError

from finledger.core.config import Settings
from finledger.core.crypto import EnvelopeCipher
from finledger.core.exceptions import InvalidInput
from finledger.core.logging import LedgerJsonFormatter, setup_logging
from finledger.services.codec import MonetaryFieldCodec


@pytest.fixture(autouse=True)
def restore_root_logger():
    """setup_logging() reconfigures the root logger; put it back after each test."""
    root = logging.getLogger()
    level = root.level
    handlers = list(root.handlers)
    yield
    root.setLevel(level)
    root.handlers[:] = handlers


def _key(seed: int) -> str:
    return base64.b64encode(bytes([seed]) * 32).decode()


def test_kdf_iterations_below_minimum_are_refused():
    with pytest.raises(ValidationError):
        Settings(KDF_ITERATIONS=1_000)


def test_decrypt_failure_policy_is_restricted():
    with pytest.raises(ValidationError):
        Settings(DECRYPT_FAILURE_POLICY="ignore")


def test_codec_from_settings():
    settings = Settings(
        ENCRYPTION_KEY=_key(1),
        ENCRYPTION_PREVIOUS_KEYS=[_key(2)],
        DECRYPT_FAILURE_POLICY="raise",
    )
    codec = MonetaryFieldCodec.from_settings(settings)
    assert codec.failure_policy == "raise"
    assert codec.cipher.iterations == 100_000

    old = EnvelopeCipher(bytes([2]) * 32, iterations=100_000)
    assert codec.cipher.decrypt(old.encrypt("12")) == "12"


def test_missing_key_is_invalid_input():
    with pytest.raises(InvalidInput):
        EnvelopeCipher.from_settings(Settings(ENCRYPTION_KEY=""))


def test_json_formatter_adds_service_fields():
    formatter = LedgerJsonFormatter("%(message)s", service="finledger-test")
    record = logging.LogRecord("finledger", logging.INFO, __file__, 1, "hello", None, None)
    record.collection = "incomes"

    payload = json.loads(formatter.format(record))

    assert payload["message"] == "hello"
    assert payload["service"] == "finledger-test"
    assert payload["level"] == "INFO"
    assert payload["collection"] == "incomes"
    assert "timestamp" in payload


def test_setup_logging_installs_one_handler():
    setup_logging(level="DEBUG", json_output=False)
    setup_logging(level="INFO", json_output=True)
    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, LedgerJsonFormatter)
    root.handlers.clear()

import json
import logging
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import logging_utils  # noqa: E402
from logging_utils import JsonFormatter, build_log_extra, mask_identifier  # noqa: E402


def test_build_log_extra_drops_empty_fields() -> None:
    payload = build_log_extra(account_id="acc-1", tier=None, score=0)
    assert payload == {"meta": {"account_id": "acc-1", "score": 0}}


def test_mask_identifier_hides_value_but_stays_stable() -> None:
    masked = mask_identifier("alice@example.com")
    assert masked.startswith("alice@")
    assert "example.com" not in masked
    assert masked == mask_identifier(" alice@example.com ")
    assert masked != mask_identifier("alice@example.org")
    assert mask_identifier(None) is None
    assert mask_identifier("  ") == ""


def test_json_formatter_merges_meta_and_redacts_dsn() -> None:
    record = logging.LogRecord(
        name="ledger",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="connecting to %s",
        args=("postgres://user:hunter2@db:5432/credits",),
        exc_info=None,
    )
    record.meta = {"account_id": "acc-1"}

    data = json.loads(JsonFormatter().format(record))

    assert data["level"] == "INFO"
    assert "hunter2" not in data["msg"]
    assert data["meta"]["account_id"] == "acc-1"
    assert data["meta"]["logger"] == "ledger"


def test_secret_env_values_are_redacted(monkeypatch) -> None:
    monkeypatch.setenv("REDIS_URL", "redis://:sup3rsecret@cache:6379/0")
    logging_utils.refresh_secret_cache()
    try:
        record = logging.LogRecord("counters", logging.WARNING, __file__, 1, "url=%s", ("redis://:sup3rsecret@cache:6379/0",), None)
        data = json.loads(JsonFormatter().format(record))
        assert "sup3rsecret" not in data["msg"]
    finally:
        monkeypatch.delenv("REDIS_URL")
        logging_utils.refresh_secret_cache()


def test_logging_extra_meta_reaches_record(caplog) -> None:
    logger = logging.getLogger("credits-test")
    with caplog.at_level(logging.DEBUG, logger="credits-test"):
        logger.debug("check", extra=build_log_extra(account_id="acc-9", amount=5))

    target = next((record for record in caplog.records if record.message == "check"), None)
    assert target is not None
    assert target.meta == {"account_id": "acc-9", "amount": 5}

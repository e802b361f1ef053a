from __future__ import annotations

import logging

from logging_config import ContextualFormatter, mask_token


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="services.dispatcher",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Pruned dead push token",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_appends_known_context_and_masks_tokens() -> None:
    formatter = ContextualFormatter(fmt="%(message)s")

    line = formatter.format(
        _record(device_id="d1", token="fcm-token-0123456789", error_code="invalid", unrelated="x")
    )

    assert line == (
        "Pruned dead push token | device_id=d1 token=fcm-toke... error_code=invalid"
    )


def test_formatter_leaves_plain_messages_untouched() -> None:
    formatter = ContextualFormatter(fmt="%(message)s")

    assert formatter.format(_record()) == "Pruned dead push token"


def test_short_tokens_are_not_masked() -> None:
    assert mask_token("abc") == "abc"

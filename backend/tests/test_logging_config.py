"""
Console formatter selection.
"""
from __future__ import annotations

import json
import logging

from billsync.core.logging_config import JsonLineFormatter, build_console_formatter


def _record(msg: str, *args) -> logging.LogRecord:
    return logging.LogRecord("billsync.webhooks", logging.WARNING, __file__, 1, msg, args, None)


def test_json_format_emits_one_object_per_record() -> None:
    formatter = build_console_formatter("JSON")

    line = formatter.format(_record("webhook_stale_processing: event=%s", "evt_1"))

    assert isinstance(formatter, JsonLineFormatter)
    entry = json.loads(line)
    assert entry["level"] == "WARNING"
    assert entry["logger"] == "billsync.webhooks"
    assert entry["message"] == "webhook_stale_processing: event=evt_1"
    assert "exc_info" not in entry


def test_text_format_is_the_fallback() -> None:
    formatter = build_console_formatter("text")

    line = formatter.format(_record("lease_release_skipped"))

    assert not isinstance(formatter, JsonLineFormatter)
    assert "| WARNING  | billsync.webhooks | lease_release_skipped" in line

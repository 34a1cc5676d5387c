from __future__ import annotations

import json
import logging

from graphflow.logging import JsonFormatter


def test_json_formatter_includes_extra_fields() -> None:
    record = logging.LogRecord("graphflow.engine", logging.INFO, __file__, 1, "Run %s", ("started",), None)
    record.run_id = "run-1"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Run started"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "graphflow.engine"
    assert payload["extra"] == {"run_id": "run-1"}
    assert "exception" not in payload

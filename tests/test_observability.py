from __future__ import annotations

import json
import logging

from beacon.observability import JsonFormatter, JsonLogConfig, configure_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="geobeacon.delivery",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="collector rejected payload: %s",
        args=(503,),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_emits_single_line_with_fields() -> None:
    formatter = JsonFormatter(JsonLogConfig(service_name="geobeacon-test"))

    line = formatter.format(_record(fields={"status_code": 503}))

    assert "\n" not in line
    payload = json.loads(line)
    assert payload["severity"] == "WARNING"
    assert payload["logger"] == "geobeacon.delivery"
    assert payload["message"] == "collector rejected payload: 503"
    assert payload["service"] == "geobeacon-test"
    assert payload["fields"] == {"status_code": 503}


def test_json_formatter_omits_non_dict_fields() -> None:
    payload = json.loads(JsonFormatter(JsonLogConfig()).format(_record(fields="nope")))
    assert "fields" not in payload


def test_configure_logging_replaces_root_handlers() -> None:
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    try:
        configure_logging(level="DEBUG", log_format="json")
        configure_logging(level="INFO", log_format="json")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.INFO

        configure_logging(level="INFO", log_format="text")
        assert not isinstance(root.handlers[0].formatter, JsonFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

import json
import logging

from app.core.logging import JsonFormatter, PrettyFormatter, configure_logging


def _record(msg="webhook failed", **extra):
    record = logging.LogRecord(
        name="app.modules.billing.api",
        level=logging.ERROR,
        pathname="api.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_emits_one_line_with_event_type():
    output = JsonFormatter().format(_record(event_type="invoice.paid"))
    data = json.loads(output)

    assert "\n" not in output
    assert data["level"] == "ERROR"
    assert data["logger"] == "app.modules.billing.api"
    assert data["message"] == "webhook failed"
    assert data["event_type"] == "invoice.paid"
    assert data["timestamp"].endswith("Z")


def test_json_formatter_omits_missing_event_type():
    assert "event_type" not in json.loads(JsonFormatter().format(_record()))


def test_pretty_formatter_is_readable():
    line = PrettyFormatter().format(_record())
    assert "ERROR [app.modules.billing.api] webhook failed" in line


def test_configure_logging_replaces_its_handler():
    configure_logging("prod", "warning", True)
    configure_logging("dev", "debug", True)

    logger = logging.getLogger("app")
    ours = [h for h in logger.handlers if h.get_name() == "entitlements"]
    assert len(ours) == 1
    assert isinstance(ours[0].formatter, PrettyFormatter)
    assert logger.level == logging.DEBUG

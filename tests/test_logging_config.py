import json
import logging

from warranty.observability.logging_config import JsonFormatter, RequestContextFilter, log_context


def _render(message="Chunk committed", **extra):
    record = logging.getLogger("warranty.tests").makeRecord(
        "warranty.tests", logging.INFO, __file__, 1, message, (), None, extra=extra or None
    )
    RequestContextFilter().filter(record)
    return json.loads(JsonFormatter().format(record))


def test_bound_identifiers_reach_the_json_line():
    with log_context(batch_id=12):
        with log_context(claim_id=40, unknown="ignored"):
            line = _render()

    assert line["batch_id"] == 12
    assert line["claim_id"] == 40
    assert "unknown" not in line
    assert line["request_id"] is None


def test_explicit_extra_wins_and_context_unwinds():
    with log_context(batch_id=12):
        line = _render(batch_id=99)

    assert line["batch_id"] == 99
    assert "batch_id" not in _render()

from __future__ import annotations

import json

import pytest

from health_checks.conditions import INVALID_SUFFIX, evaluate, evaluate_conditions
from health_checks.durations import format_duration, parse_duration
from health_checks.models import RawCheckResult


def _raw(**kwargs) -> RawCheckResult:
    kwargs.setdefault("connected", True)
    return RawCheckResult(**kwargs)


def test_status_equality_renders_resolved_values() -> None:
    out = evaluate(_raw(status=200), "[STATUS] == 200")
    assert out.success is True
    assert out.rendered == "200 == 200"
    assert out.condition == "[STATUS] == 200"


def test_status_mismatch_fails() -> None:
    out = evaluate(_raw(status=502), "[STATUS] == 200")
    assert out.success is False
    assert out.rendered == "502 == 200"


def test_whitespace_tolerant() -> None:
    assert evaluate(_raw(status=200), "  [STATUS]==200 ").success is True
    assert evaluate(_raw(status=404), "[STATUS]   >=   400").success is True


def test_response_time_compares_normalized_durations() -> None:
    raw = _raw(duration=0.150)
    assert evaluate(raw, "[RESPONSE_TIME] < 300ms").success is True
    assert evaluate(raw, "[RESPONSE_TIME] < 1s").success is True
    assert evaluate(raw, "[RESPONSE_TIME] > 100").success is True
    assert evaluate(raw, "[RESPONSE_TIME] < 100ms").success is False


def test_certificate_expiration_with_hour_literal() -> None:
    raw = _raw(certificate_expiration=5 * 86400.0)
    assert evaluate(raw, "[CERTIFICATE_EXPIRATION] > 48h").success is True
    assert evaluate(raw, "[CERTIFICATE_EXPIRATION] > 240h").success is False


def test_body_json_path_extraction() -> None:
    body = json.dumps({"user": {"id": 7, "name": "john", "active": True}, "items": [{"name": "a"}, {"name": "b"}]})
    raw = _raw(body=body.encode("utf-8"))
    assert evaluate(raw, "[BODY].user.id == 7").success is True
    assert evaluate(raw, "[BODY].user.name == john").success is True
    assert evaluate(raw, "[BODY].user.active == true").success is True
    assert evaluate(raw, "[BODY].items[1].name == b").success is True
    assert evaluate(raw, "[BODY].user.id > 5").success is True


def test_body_json_path_on_top_level_array() -> None:
    raw = _raw(body=b'[{"id": 1}, {"id": 2}]')
    assert evaluate(raw, "[BODY][1].id == 2").success is True


def test_unresolvable_json_path_fails_without_raising() -> None:
    raw = _raw(body=b'{"user": {"id": 7}}')
    out = evaluate(raw, "[BODY].user.missing == 7")
    assert out.success is False
    assert INVALID_SUFFIX in out.rendered

    # != must not turn an unresolvable path into a pass.
    assert evaluate(raw, "[BODY].items[3] != 1").success is False
    assert evaluate(_raw(body=b"not json"), "[BODY].user == x").success is False


def test_contains_and_negated_contains() -> None:
    raw = _raw(body=b"<html>all systems operational</html>")
    assert evaluate(raw, "[BODY] contains operational").success is True
    assert evaluate(raw, "[BODY] !contains maintenance").success is True
    assert evaluate(raw, "[BODY] not contains operational").success is False


def test_connected_forced_false_on_executor_error() -> None:
    raw = RawCheckResult(connected=True, error="tcp_error: ConnectionRefusedError")
    out = evaluate(raw, "[CONNECTED] == true")
    assert out.success is False
    assert out.rendered == "false == true"


def test_ip_and_dns_rcode_placeholders() -> None:
    raw = _raw(ip="93.184.216.34", dns_rcode="NOERROR")
    assert evaluate(raw, "[IP] == 93.184.216.34").success is True
    assert evaluate(raw, "[DNS_RCODE] == NOERROR").success is True
    assert evaluate(raw, "[DNS_RCODE] != NXDOMAIN").success is True


def test_unknown_placeholder_is_a_literal() -> None:
    out = evaluate(_raw(), "[UNKNOWN] == [UNKNOWN]")
    assert out.success is True
    assert out.rendered == "[UNKNOWN] == [UNKNOWN]"
    assert evaluate(_raw(), "[UNKNOWN] == 1").success is False


def test_functions_len_has_pat_any() -> None:
    raw = _raw(status=201, body=b'{"items": [1, 2, 3], "name": "prod-eu-1"}')
    assert evaluate(raw, "len([BODY].items) == 3").success is True
    assert evaluate(raw, "len([BODY].name) > 3").success is True
    assert evaluate(raw, "has([BODY].items) == true").success is True
    assert evaluate(raw, "has([BODY].errors) == false").success is True
    assert evaluate(raw, "[BODY].name == pat(prod-*)").success is True
    assert evaluate(raw, "[BODY].name != pat(dev-*)").success is True
    assert evaluate(raw, "[STATUS] == any(200, 201, 204)").success is True
    assert evaluate(raw, "[STATUS] == any(200, 204)").success is False


def test_malformed_expression_does_not_block_siblings() -> None:
    raw = _raw(status=200)
    outcomes = evaluate_conditions(raw, ["[STATUS] ?? 200", "[STATUS] == 200"])
    assert len(outcomes) == 2
    bad, good = outcomes
    assert bad.success is False
    assert bad.rendered
    assert "invalid condition" in bad.rendered
    assert good.success is True


def test_ordered_comparison_on_non_numeric_values_fails() -> None:
    out = evaluate(_raw(body=b"hello"), "[BODY] < 5")
    assert out.success is False
    assert "non-numeric" in out.rendered


def test_long_body_is_truncated_for_display_only() -> None:
    body = ("x" * 500 + "needle").encode("utf-8")
    out = evaluate(_raw(body=body), "[BODY] contains needle")
    assert out.success is True
    assert len(out.rendered) < 200


@pytest.mark.parametrize(
    ("text", "seconds"),
    [("300ms", 0.3), ("4h", 14400.0), ("1h30m", 5400.0), ("45", 45.0), ("2d", 172800.0)],
)
def test_parse_duration(text: str, seconds: float) -> None:
    assert parse_duration(text) == pytest.approx(seconds)


def test_parse_duration_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        parse_duration("soon")


def test_format_duration() -> None:
    assert format_duration(0.25) == "250ms"
    assert format_duration(90) == "1m30s"

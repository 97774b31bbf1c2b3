from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatchcase
from functools import cached_property
from typing import Any, Iterable

from health_checks.durations import is_duration_literal, parse_duration
from health_checks.models import ConditionOutcome, RawCheckResult


# Condition grammar: LEFT OPERATOR RIGHT
#
#   [STATUS] == 200
#   [RESPONSE_TIME] < 300ms
#   [BODY].items[0].name == pat(*prod*)
#   len([BODY].items) > 0
#   [BODY] !contains maintenance


class Placeholder(str, Enum):
    STATUS = "STATUS"
    BODY = "BODY"
    RESPONSE_TIME = "RESPONSE_TIME"
    IP = "IP"
    CERTIFICATE_EXPIRATION = "CERTIFICATE_EXPIRATION"
    DNS_RCODE = "DNS_RCODE"
    CONNECTED = "CONNECTED"


class ValueKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    DURATION = "duration"
    BOOL = "bool"


PLACEHOLDER_KINDS: dict[Placeholder, ValueKind] = {
    Placeholder.STATUS: ValueKind.NUMBER,
    Placeholder.BODY: ValueKind.STRING,
    Placeholder.RESPONSE_TIME: ValueKind.DURATION,
    Placeholder.IP: ValueKind.STRING,
    Placeholder.CERTIFICATE_EXPIRATION: ValueKind.DURATION,
    Placeholder.DNS_RCODE: ValueKind.STRING,
    Placeholder.CONNECTED: ValueKind.BOOL,
}

INVALID_SUFFIX = "(INVALID)"

_MAX_DISPLAY_LEN = 120

_OPERATOR_RE = re.compile(
    r"\s*(?P<sym>==|!=|<=|>=|<|>)\s*|\s+(?P<word>!contains|not\s+contains|contains)\s+",
    re.IGNORECASE,
)
_PLACEHOLDER_RE = re.compile(r"^\[(?P<name>[A-Z_]+)\](?P<path>.*)$")
_FUNCTION_RE = re.compile(r"^(?P<fn>len|has|pat|any)\((?P<arg>.*)\)$", re.IGNORECASE)
_PATH_TOKEN_RE = re.compile(r"\.(?P<key>[^.\[\]]+)|\[(?P<index>\d+)\]")
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")


@dataclass(frozen=True)
class _Operand:
    text: str
    display: str
    kind: ValueKind = ValueKind.STRING
    number: float | None = None
    invalid: bool = False
    pattern: bool = False
    alternatives: tuple[_Operand, ...] = ()
    value: Any = field(default=None, compare=False)


class _Context:
    def __init__(self, raw: RawCheckResult) -> None:
        self.raw = raw

    @cached_property
    def body_text(self) -> str:
        body = self.raw.body or b""
        if isinstance(body, str):
            return body
        return body.decode("utf-8", errors="replace")

    @cached_property
    def body_json(self) -> tuple[bool, Any]:
        try:
            return True, json.loads(self.body_text)
        except ValueError:
            return False, None


def _truncate(s: str) -> str:
    if len(s) <= _MAX_DISPLAY_LEN:
        return s
    return s[: _MAX_DISPLAY_LEN - 3] + "..."


def _json_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _walk_json(obj: Any, path: str) -> tuple[bool, Any]:
    pos = 0
    while pos < len(path):
        m = _PATH_TOKEN_RE.match(path, pos)
        if m is None:
            return False, None
        key = m.group("key")
        if key is not None:
            if not isinstance(obj, dict) or key not in obj:
                return False, None
            obj = obj[key]
        else:
            idx = int(m.group("index"))
            if not isinstance(obj, list) or idx >= len(obj):
                return False, None
            obj = obj[idx]
        pos = m.end()
    return True, obj


def _to_float(text: str) -> float | None:
    s = str(text).strip()
    if not _NUMBER_RE.match(s):
        return None
    return float(s)


def _literal(token: str) -> _Operand:
    text = token
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {'"', "'"}:
        text = text[1:-1]
        return _Operand(text=text, display=token)
    return _Operand(text=text, display=token, number=_to_float(text))


def _invalid(token: str) -> _Operand:
    return _Operand(text="", display=f"{token} {INVALID_SUFFIX}", invalid=True)


def _resolve_placeholder(token: str, name: Placeholder, path: str, ctx: _Context) -> _Operand:
    raw = ctx.raw
    kind = PLACEHOLDER_KINDS[name]

    if name is Placeholder.BODY:
        if not path:
            text = ctx.body_text
            return _Operand(text=text, display=_truncate(text), kind=kind, value=text)
        ok, doc = ctx.body_json
        if not ok:
            return _invalid(token)
        found, value = _walk_json(doc, path)
        if not found:
            return _invalid(token)
        text = _json_text(value)
        number = float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None
        return _Operand(text=text, display=_truncate(text), kind=kind, number=number, value=value)

    if path:
        # Only BODY supports a JSON path suffix.
        return _literal(token)

    if name is Placeholder.STATUS:
        status = int(raw.status or 0)
        return _Operand(text=str(status), display=str(status), kind=kind, number=float(status))
    if name is Placeholder.RESPONSE_TIME:
        ms = int(round(float(raw.duration) * 1000.0))
        return _Operand(text=str(ms), display=str(ms), kind=kind, number=float(ms))
    if name is Placeholder.CERTIFICATE_EXPIRATION:
        ms = int(round(float(raw.certificate_expiration or 0.0) * 1000.0))
        return _Operand(text=str(ms), display=str(ms), kind=kind, number=float(ms))
    if name is Placeholder.CONNECTED:
        text = "true" if (raw.connected and raw.error is None) else "false"
        return _Operand(text=text, display=text, kind=kind)
    if name is Placeholder.IP:
        text = raw.ip or ""
        return _Operand(text=text, display=text, kind=kind)
    text = raw.dns_rcode or ""
    return _Operand(text=text, display=text, kind=kind)


def _resolve(token: str, ctx: _Context) -> _Operand:
    token = token.strip()

    fn_match = _FUNCTION_RE.match(token)
    if fn_match is not None:
        fn = fn_match.group("fn").lower()
        arg = fn_match.group("arg").strip()
        if fn == "pat":
            return _Operand(text=arg, display=token, pattern=True)
        if fn == "any":
            alternatives = tuple(_resolve(part, ctx) for part in arg.split(","))
            return _Operand(text=arg, display=token, alternatives=alternatives)
        inner = _resolve(arg, ctx)
        if fn == "has":
            text = "false" if inner.invalid else "true"
            return _Operand(text=text, display=text, kind=ValueKind.BOOL)
        # len
        if inner.invalid:
            return _invalid(token)
        value = inner.value if isinstance(inner.value, (list, dict, str)) else inner.text
        n = len(value)
        return _Operand(text=str(n), display=str(n), kind=ValueKind.NUMBER, number=float(n))

    ph_match = _PLACEHOLDER_RE.match(token)
    if ph_match is not None:
        try:
            name = Placeholder(ph_match.group("name"))
        except ValueError:
            return _literal(token)
        return _resolve_placeholder(token, name, ph_match.group("path"), ctx)

    return _literal(token)


def _as_number(operand: _Operand, counterpart: _Operand) -> float | None:
    if operand.number is not None:
        return operand.number
    if operand.pattern or operand.alternatives or operand.kind is ValueKind.BOOL:
        return None
    if counterpart.kind is ValueKind.DURATION and is_duration_literal(operand.text):
        return parse_duration(operand.text) * 1000.0
    return _to_float(operand.text)


def _equals(left: _Operand, right: _Operand) -> bool:
    if right.alternatives:
        return any(_equals(left, alt) for alt in right.alternatives)
    if left.alternatives:
        return any(_equals(alt, right) for alt in left.alternatives)
    if right.pattern:
        return fnmatchcase(left.text, right.text)
    if left.pattern:
        return fnmatchcase(right.text, left.text)
    ln = _as_number(left, right)
    rn = _as_number(right, left)
    if ln is not None and rn is not None:
        return ln == rn
    return left.text == right.text


def _diagnostic(condition: str, reason: str) -> ConditionOutcome:
    return ConditionOutcome(condition=condition, rendered=f"{condition} (invalid condition: {reason})", success=False)


def _normalize_operator(m: re.Match[str]) -> str:
    if m.group("sym"):
        return m.group("sym")
    word = re.sub(r"\s+", " ", m.group("word").lower())
    return "!contains" if word == "not contains" else word


def evaluate(raw: RawCheckResult, condition: str) -> ConditionOutcome:
    return _evaluate(_Context(raw), condition)


def evaluate_conditions(raw: RawCheckResult, conditions: Iterable[str]) -> list[ConditionOutcome]:
    ctx = _Context(raw)
    return [_evaluate(ctx, c) for c in conditions]


def _evaluate(ctx: _Context, condition: str) -> ConditionOutcome:
    condition = str(condition or "")
    m = _OPERATOR_RE.search(condition)
    if m is None:
        return _diagnostic(condition, "missing comparison operator")

    left_token = condition[: m.start()].strip()
    right_token = condition[m.end() :].strip()
    if not left_token or not right_token:
        return _diagnostic(condition, "missing operand")

    op = _normalize_operator(m)
    try:
        left = _resolve(left_token, ctx)
        right = _resolve(right_token, ctx)
        rendered = f"{left.display} {op} {right.display}"

        if left.invalid or right.invalid:
            return ConditionOutcome(condition=condition, rendered=rendered, success=False)

        if op == "==":
            success = _equals(left, right)
        elif op == "!=":
            success = not _equals(left, right)
        elif op == "contains":
            success = right.text in left.text
        elif op == "!contains":
            success = right.text not in left.text
        else:
            ln = _as_number(left, right)
            rn = _as_number(right, left)
            if ln is None or rn is None:
                return ConditionOutcome(
                    condition=condition,
                    rendered=f"{rendered} (invalid condition: non-numeric comparison)",
                    success=False,
                )
            if op == "<":
                success = ln < rn
            elif op == "<=":
                success = ln <= rn
            elif op == ">":
                success = ln > rn
            else:
                success = ln >= rn
    except Exception as exc:
        return _diagnostic(condition, f"{type(exc).__name__}: {exc}")

    return ConditionOutcome(condition=condition, rendered=rendered, success=bool(success))

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import ClassVar

import httpx

from health_checks.errors import DispatchError
from health_checks.models import AlertRule, Result, Target
from health_checks.providers.base import AlertDefaults, AlertProvider, build_alert_message


TELEGRAM_MAX_MESSAGE_LEN = 3900


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        chunk = s[:cut].rstrip()
        parts.append(chunk)
        s = s[cut:].lstrip()
    return parts


def redact_telegram_response(data: dict) -> str:
    safe = {"ok": data.get("ok")}
    if isinstance(data.get("result"), dict):
        safe["result"] = {"message_id": data["result"].get("message_id")}
    if data.get("error"):
        safe["error"] = data.get("error")
    if data.get("description"):
        safe["description"] = data.get("description")
    return json.dumps(safe, ensure_ascii=False)


async def send_telegram_message(client: httpx.AsyncClient, *, token: str, chat_id: str, text: str) -> tuple[bool, dict]:
    url = f"https://api.telegram.org/bot{token}/sendMessage"
    payload = {"chat_id": chat_id, "text": text}
    try:
        resp = await client.post(url, json=payload)
        data = resp.json()
        return bool(data.get("ok")), data
    except (httpx.HTTPError, ValueError) as e:
        msg = f"{type(e).__name__}: {e}"
        if token:
            msg = msg.replace(token, "<redacted>")
        return False, {"ok": False, "error": msg}


@dataclass(frozen=True)
class TelegramAlertProvider(AlertProvider):
    type: ClassVar[str] = "telegram"

    token: str = ""
    id: str = ""
    timeout: float = 15.0
    default_alert_config: AlertDefaults | None = None

    def is_valid(self) -> bool:
        return bool(self.token.strip()) and bool(str(self.id).strip())

    async def send(self, target: Target, rule: AlertRule, result: Result, *, resolved: bool) -> None:
        text = build_alert_message(target, rule, result, resolved=resolved)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for part in split_telegram_message(text):
                ok, data = await send_telegram_message(client, token=self.token, chat_id=str(self.id), text=part)
                if not ok:
                    raise DispatchError(f"telegram sendMessage failed: {redact_telegram_response(data)}")

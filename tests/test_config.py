from __future__ import annotations

import os
from datetime import time
from pathlib import Path

import pytest

from health_checks.config import expand_env, load_config, load_default_config, parse_config
from health_checks.errors import ConfigurationError
from health_checks.history import MemoryHistoryStore, SqliteHistoryStore
from health_checks.models import ProbeKind
from health_checks.providers import CustomAlertProvider, TelegramAlertProvider


REPO_ROOT = Path(__file__).resolve().parents[1]

_MINIMAL = """
services:
  - name: front
    url: https://example.com
    conditions:
      - "[STATUS] == 200"
"""


def test_example_config_loads(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "ALERT_WEBHOOK_URL"):
        monkeypatch.delenv(var, raising=False)

    cfg = load_config(REPO_ROOT / "config" / "config.yaml")

    assert [t.key for t in cfg.targets] == ["core_website", "core_api-health", "infra_postgres", "infra_resolver"]
    kinds = [t.probe_kind for t in cfg.targets]
    assert kinds == [ProbeKind.HTTP, ProbeKind.HTTP, ProbeKind.TCP, ProbeKind.DNS]

    api = cfg.targets[1]
    assert api.interval == 30.0
    assert api.client.timeout == 5.0
    assert api.alerts[0].failure_threshold == 2
    assert api.alerts[0].success_threshold == 2

    # Providers without credentials are dropped.
    assert cfg.providers == {}
    assert cfg.maintenance is not None
    assert cfg.maintenance.start == time(23, 0)
    assert cfg.maintenance.every == ("saturday", "sunday")
    assert cfg.monitoring_lock is True
    assert cfg.skip_invalid_config_update is True
    assert isinstance(cfg.create_history_store(), MemoryHistoryStore)


def test_defaults_are_applied() -> None:
    cfg = parse_config(_MINIMAL)
    (target,) = cfg.targets
    assert target.key == "_front"
    assert target.interval == 60.0
    assert target.client.timeout == 10.0
    assert target.method == "GET"
    assert cfg.storage.type == "memory"
    assert cfg.storage.capacity == 20
    assert cfg.maintenance is None


def test_provider_default_alert_fills_unset_fields_only(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOOK_URL", "https://hooks.example.com/x")
    cfg = parse_config(
        """
alerting:
  custom:
    url: ${HOOK_URL}
    default-alert:
      failure-threshold: 5
      send-on-resolved: true
      description: from defaults
services:
  - name: api
    group: core
    url: https://example.com
    conditions: ["[STATUS] == 200"]
    alerts:
      - type: custom
      - type: custom
        failure-threshold: 1
        description: explicit
"""
    )
    provider = cfg.providers["custom"]
    assert isinstance(provider, CustomAlertProvider)
    assert provider.url == "https://hooks.example.com/x"

    first, second = cfg.targets[0].alerts
    assert (first.failure_threshold, first.send_on_resolved, first.description) == (5, True, "from defaults")
    assert (second.failure_threshold, second.send_on_resolved, second.description) == (1, True, "explicit")
    assert first.success_threshold == 2
    assert first.enabled is True


def test_telegram_numeric_chat_id_and_override() -> None:
    cfg = parse_config(
        """
alerting:
  telegram:
    token: "123:abc"
    id: 987654
services:
  - name: api
    url: https://example.com
    conditions: ["[STATUS] == 200"]
    alerts:
      - type: telegram
        provider-override:
          id: "111"
"""
    )
    provider = cfg.providers["telegram"]
    assert isinstance(provider, TelegramAlertProvider)
    assert provider.id == "987654"
    assert cfg.targets[0].alerts[0].provider_override == {"id": "111"}


def test_unquoted_maintenance_start_is_accepted() -> None:
    cfg = parse_config(
        _MINIMAL
        + """
maintenance:
  start: 23:00
  duration: 2h
"""
    )
    assert cfg.maintenance is not None
    assert cfg.maintenance.start == time(23, 0)


@pytest.mark.parametrize(
    "text",
    [
        "services: []",
        "- just\n- a list",
        "services: [\n",
        "services:\n  - name: a\n    url: https://example.com\n    conditions: []",
        "services:\n  - name: a\n    url: https://example.com\n    interval: soon\n    conditions: ['[STATUS] == 200']",
        "services:\n  - name: a\n    url: ftp://example.com\n    conditions: ['[STATUS] == 200']",
        "services:\n  - name: a\n    url: https://example.com\n    conditions: ['[STATUS] == 200']\n"
        "    alerts:\n      - type: custom\n        failure-threshold: 0",
        "services:\n  - name: a\n    url: https://a.example.com\n    conditions: ['[STATUS] == 200']\n"
        "  - name: a\n    url: https://b.example.com\n    conditions: ['[STATUS] == 200']",
        _MINIMAL + "maintenance:\n  start: '25:00'\n  duration: 1h\n",
        _MINIMAL + "maintenance:\n  start: '01:00'\n  duration: 1h\n  every: [someday]\n",
        _MINIMAL + "storage:\n  type: sqlite\n",
        _MINIMAL + "storage:\n  type: redis\n",
        _MINIMAL + "security:\n  basic:\n    username: admin\n    password-sha512: short\n",
        "services:\n  - name: r\n    url: 8.8.8.8\n    dns:\n      query-name: example.org\n      query-type: BOGUS\n"
        "    conditions: ['[DNS_RCODE] == NOERROR']",
    ],
)
def test_invalid_configs_are_rejected(text: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_config(text)


def test_sqlite_storage(tmp_path: Path) -> None:
    db = tmp_path / "data.db"
    cfg = parse_config(_MINIMAL + f"storage:\n  type: sqlite\n  file: {db}\n  capacity: 5\n")
    store = cfg.create_history_store()
    try:
        assert isinstance(store, SqliteHistoryStore)
        assert store.capacity == 5
    finally:
        store.close()


def test_disable_monitoring_lock() -> None:
    cfg = parse_config("disable-monitoring-lock: true\n" + _MINIMAL)
    assert cfg.monitoring_lock is False


def test_expand_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HC_HOST", "status.example.com")
    monkeypatch.delenv("HC_MISSING", raising=False)
    assert expand_env("https://$HC_HOST/${HC_HOST}") == "https://status.example.com/status.example.com"
    assert expand_env("x${HC_MISSING}y") == "xy"


def test_missing_file_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "nope.yaml")


def test_modification_marker(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(_MINIMAL, encoding="utf-8")
    cfg = load_config(path)
    assert cfg.has_been_modified() is False

    st = path.stat()
    os.utime(path, (st.st_atime, st.st_mtime + 10))
    assert cfg.has_been_modified() is True

    cfg.update_last_file_mtime()
    assert cfg.has_been_modified() is False


def test_sub_second_rewrite_is_detected(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(_MINIMAL, encoding="utf-8")
    cfg = load_config(path)

    st = path.stat()
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 500_000_000))
    assert cfg.has_been_modified() is True

    cfg.update_last_file_mtime()
    assert cfg.has_been_modified() is False


def test_load_default_config_prefers_env_then_yml_fallback(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    explicit = tmp_path / "explicit.yaml"
    explicit.write_text(_MINIMAL, encoding="utf-8")
    monkeypatch.setenv("HEALTH_CHECKS_CONFIG_FILE", str(explicit))
    assert load_default_config().file_path == explicit

    monkeypatch.delenv("HEALTH_CHECKS_CONFIG_FILE")
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "config.yml").write_text(_MINIMAL, encoding="utf-8")
    assert load_default_config().file_path == Path("config/config.yml")

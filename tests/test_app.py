from __future__ import annotations

import json
import logging

import pytest

import app
from core.models import PostKind, RankingMode, Subscription


def test_redacting_formatter_masks_secrets() -> None:
    formatter = app._RedactingFormatter(["123:secret"], fmt="%(message)s")
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "token=%s", ("123:secret",), None)

    assert formatter.format(record) == "token=***"


def test_collect_redaction_values(monkeypatch) -> None:
    monkeypatch.setenv("BOT_TOKEN", "123:secret")
    monkeypatch.delenv("API_HASH", raising=False)

    assert app._collect_redaction_values({}) == ["123:secret"]
    assert app._collect_redaction_values({"redact": {"enabled": False}}) == []


def test_describe_subscription() -> None:
    sub = Subscription(
        subreddit="example",
        chat_id=1,
        interval_seconds=600,
        ranking=RankingMode.parse("top:week"),
        min_score=50,
        limit=3,
        kind_filter=PostKind.VIDEO,
        media_enabled=False,
    )

    assert app.describe_subscription(sub) == (
        "r/example -> 1 (ranking=top:week, limit=3, every=600s, min_score=50, kind=video, media=off)"
    )


def test_check_config_command(tmp_path, capsys) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "subscriptions": [{"subreddit": "example", "chat_id": 1}],
                "logging": {"enabled": False},
            }
        ),
        encoding="utf-8",
    )

    with pytest.raises(SystemExit) as excinfo:
        app.main(["--config", str(path), "check-config"])

    assert excinfo.value.code == 0
    assert "r/example -> 1" in capsys.readouterr().out


def test_bad_config_exits_with_startup_code(tmp_path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        app.main(["--config", str(tmp_path / "missing.json"), "check-config"])

    assert excinfo.value.code == 2

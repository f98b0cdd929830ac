"""Unit tests for config loading."""

from pathlib import Path

import pytest

from modmail.config import AttachmentStorageType, DatabaseConfig, LogStorageType, load_config


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_fill_missing_sections(tmp_path):
    config = load_config(_write(tmp_path, "discord:\n  inbox_server_id: 200\n"))

    assert config.discord.inbox_server_id == "200"
    assert config.discord.mention_role == ["here"]
    assert config.relay.prefix == "!"
    assert config.relay.allow_staff_edit is True
    assert config.snippets.inline_start == "{{"
    assert config.attachments.storage is AttachmentStorageType.ORIGINAL
    assert config.logs.storage is LogStorageType.LOCAL


def test_env_vars_are_expanded(tmp_path, monkeypatch):
    monkeypatch.setenv("DISCORD_BOT_TOKEN", "secret-token")
    monkeypatch.setenv("MODMAIL_WEB_URL", "https://mail.example/")

    config = load_config(_write(tmp_path, "web:\n  url: ${MODMAIL_WEB_URL}\n"))

    assert config.discord.token == "secret-token"
    assert config.web.url == "https://mail.example"


def test_unset_token_placeholder_becomes_empty(tmp_path, monkeypatch):
    monkeypatch.delenv("DISCORD_BOT_TOKEN", raising=False)

    config = load_config(_write(tmp_path, "relay:\n  prefix: '?'\n"))

    assert config.discord.token == ""
    assert config.relay.prefix == "?"


def test_scalars_and_line_lists(tmp_path):
    config = load_config(
        _write(
            tmp_path,
            "discord:\n"
            "  main_server_ids: 100\n"
            "  mention_role: 555\n"
            "relay:\n"
            "  response_message:\n"
            "    - Thanks for reaching out.\n"
            "    - We will reply soon.\n"
            "requirements:\n"
            "  account_age_hours: 24\n",
        )
    )

    assert config.discord.main_server_ids == ["100"]
    assert config.discord.mention_role == ["555"]
    assert config.relay.response_message == "Thanks for reaching out.\nWe will reply soon."
    assert config.requirements.account_age_hours == 24.0


def test_invalid_category_mapping_is_rejected(tmp_path):
    with pytest.raises(ValueError, match="category_by_server"):
        load_config(_write(tmp_path, "discord:\n  category_by_server: [1, 2]\n"))


def test_invalid_storage_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        load_config(_write(tmp_path, "attachments:\n  storage: s3\n"))


def test_database_path_env_override(monkeypatch):
    database = DatabaseConfig(_configured_path="/var/lib/modmail.db")
    assert database.path == "/var/lib/modmail.db"

    monkeypatch.setenv("MODMAIL_DB_PATH", "/tmp/override.db")
    assert database.path == "/tmp/override.db"

"""Global configuration management.

Config is loaded at module import time and available globally via:
    from modmail.config import config
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from modmail.constants import ATTACHMENT_MAX_RETRIES, SCANNER_POLL_INTERVAL_S, SMALL_ATTACHMENT_LIMIT
from modmail.utils import expand_env_vars

# Project root (relative to this file)
_project_root = Path(__file__).parent.parent.parent

# Load .env (allow override for tests)
_env_path = os.getenv("MODMAIL_ENV_PATH")
_dotenv_path = Path(_env_path).expanduser() if _env_path else _project_root / ".env"
if not _dotenv_path.is_absolute():
    _dotenv_path = (_project_root / _dotenv_path).resolve()

load_dotenv(_dotenv_path)


class AttachmentStorageType(str, Enum):
    """Where relayed attachments are re-hosted."""

    ORIGINAL = "original"
    LOCAL = "local"
    DISCORD = "discord"


class LogStorageType(str, Enum):
    """Where closed-thread transcripts are kept."""

    NONE = "none"
    LOCAL = "local"
    ATTACHMENT = "attachment"


@dataclass
class DatabaseConfig:
    _configured_path: str

    @property
    def path(self) -> str:
        """Get database path (MODMAIL_DB_PATH wins for test compatibility)."""
        env_path = os.getenv("MODMAIL_DB_PATH")
        if env_path:
            return env_path
        return self._configured_path


@dataclass
class DiscordConfig:
    # pylint: disable=too-many-instance-attributes  # Config classes naturally have many fields
    token: str
    main_server_ids: list[str]
    inbox_server_id: Optional[str]
    log_channel_id: Optional[str]
    mention_role: list[str]
    default_category_id: Optional[str]
    category_by_server: dict[str, str]
    bot_name: str = "Modmail"
    blocked_reply: Optional[str] = None


@dataclass
class RequirementsConfig:
    account_age_hours: Optional[float] = None
    account_age_denied_message: Optional[str] = None
    time_on_server_minutes: Optional[float] = None
    time_on_server_denied_message: Optional[str] = None


@dataclass
class RelayConfig:
    # pylint: disable=too-many-instance-attributes  # Config classes naturally have many fields
    prefix: str = "!"
    use_nicknames: bool = False
    use_display_names: bool = True
    break_formatting_for_names: bool = True
    relay_inline_replies: bool = True
    fallback_role_name: Optional[str] = None
    override_role_name_display: Optional[str] = None
    thread_timestamps: bool = False
    react_on_seen: bool = False
    react_on_seen_emoji: str = "📨"
    relay_small_attachments_as_attachments: bool = False
    small_attachment_limit: int = SMALL_ATTACHMENT_LIMIT
    auto_alert: bool = False
    auto_alert_delay: str = "1s"
    close_message: Optional[str] = None
    response_message: Optional[str] = None
    show_response_message_in_thread_channel: bool = True
    allow_suspend: bool = True
    allow_staff_edit: bool = True
    allow_staff_delete: bool = True
    update_messages_live: bool = False
    ignore_accidental_threads: bool = False
    mention_user_in_thread_header: bool = False


@dataclass
class SnippetConfig:
    allow_inline: bool = True
    inline_start: str = "{{"
    inline_end: str = "}}"
    error_on_unknown_inline: bool = True


@dataclass
class AttachmentConfig:
    storage: AttachmentStorageType
    directory: str
    storage_channel_id: Optional[str] = None
    max_retries: int = ATTACHMENT_MAX_RETRIES


@dataclass
class LogConfig:
    storage: LogStorageType
    attachment_directory: str


@dataclass
class WebConfig:
    url: str


@dataclass
class ScannerConfig:
    poll_interval_s: float = SCANNER_POLL_INTERVAL_S


@dataclass
class Config:
    # pylint: disable=too-many-instance-attributes  # Config classes naturally have many fields
    database: DatabaseConfig
    discord: DiscordConfig
    requirements: RequirementsConfig
    relay: RelayConfig
    snippets: SnippetConfig
    attachments: AttachmentConfig
    logs: LogConfig
    web: WebConfig
    scanner: ScannerConfig = field(default_factory=ScannerConfig)


# Default configuration values (single source of truth for user-configurable keys)
DEFAULT_CONFIG: dict[str, object] = {
    "database": {
        "path": str(_project_root / "modmail.db"),
    },
    "discord": {
        "token": "${DISCORD_BOT_TOKEN}",
        "main_server_ids": [],
        "inbox_server_id": None,
        "log_channel_id": None,
        "mention_role": ["here"],
        "default_category_id": None,
        "category_by_server": {},
        "bot_name": "Modmail",
        "blocked_reply": None,
    },
    "requirements": {
        "account_age_hours": None,
        "account_age_denied_message": None,
        "time_on_server_minutes": None,
        "time_on_server_denied_message": None,
    },
    "relay": {
        "prefix": "!",
        "use_nicknames": False,
        "use_display_names": True,
        "break_formatting_for_names": True,
        "relay_inline_replies": True,
        "fallback_role_name": None,
        "override_role_name_display": None,
        "thread_timestamps": False,
        "react_on_seen": False,
        "react_on_seen_emoji": "📨",
        "relay_small_attachments_as_attachments": False,
        "small_attachment_limit": SMALL_ATTACHMENT_LIMIT,
        "auto_alert": False,
        "auto_alert_delay": "1s",
        "close_message": None,
        "response_message": None,
        "show_response_message_in_thread_channel": True,
        "allow_suspend": True,
        "allow_staff_edit": True,
        "allow_staff_delete": True,
        "update_messages_live": False,
        "ignore_accidental_threads": False,
        "mention_user_in_thread_header": False,
    },
    "snippets": {
        "allow_inline": True,
        "inline_start": "{{",
        "inline_end": "}}",
        "error_on_unknown_inline": True,
    },
    "attachments": {
        "storage": AttachmentStorageType.ORIGINAL.value,
        "directory": str(_project_root / "attachments"),
        "storage_channel_id": None,
        "max_retries": ATTACHMENT_MAX_RETRIES,
    },
    "logs": {
        "storage": LogStorageType.LOCAL.value,
        "attachment_directory": str(_project_root / "logs"),
    },
    "web": {
        "url": "http://localhost:8890",
    },
    "scanner": {
        "poll_interval_s": SCANNER_POLL_INTERVAL_S,
    },
}


def _deep_merge(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    """Deep merge override dict into base dict.

    Args:
        base: Base dictionary with defaults
        override: Dictionary with overrides from user config

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)  # type: ignore[arg-type]
        else:
            result[key] = value
    return result


def _optional_str(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _optional_float(value: object) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)  # type: ignore[arg-type]


def _str_list(value: object) -> list[str]:
    """Accept a scalar or a list; YAML users write both."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


def _read_multiline(value: object) -> Optional[str]:
    """Messages may be written as a YAML list of lines."""
    if isinstance(value, list):
        return "\n".join(str(line) for line in value)
    return _optional_str(value)


def _build_config(raw: dict[str, Any]) -> Config:
    """Build typed Config from raw dict with proper type conversion."""
    db_raw = raw["database"]
    discord_raw = raw["discord"]
    req_raw = raw["requirements"]
    relay_raw = raw["relay"]
    snippets_raw = raw["snippets"]
    att_raw = raw["attachments"]
    logs_raw = raw["logs"]

    token = str(discord_raw.get("token") or "")
    if token.startswith("${"):
        # Unexpanded placeholder means the variable is unset
        token = ""

    category_raw = discord_raw.get("category_by_server") or {}
    if not isinstance(category_raw, dict):
        raise ValueError(f"discord.category_by_server must be a mapping, got {type(category_raw).__name__}")

    return Config(
        database=DatabaseConfig(_configured_path=str(db_raw["path"])),
        discord=DiscordConfig(
            token=token,
            main_server_ids=_str_list(discord_raw.get("main_server_ids")),
            inbox_server_id=_optional_str(discord_raw.get("inbox_server_id")),
            log_channel_id=_optional_str(discord_raw.get("log_channel_id")),
            mention_role=_str_list(discord_raw.get("mention_role")),
            default_category_id=_optional_str(discord_raw.get("default_category_id")),
            category_by_server={str(k): str(v) for k, v in category_raw.items()},
            bot_name=str(discord_raw.get("bot_name") or "Modmail"),
            blocked_reply=_read_multiline(discord_raw.get("blocked_reply")),
        ),
        requirements=RequirementsConfig(
            account_age_hours=_optional_float(req_raw.get("account_age_hours")),
            account_age_denied_message=_read_multiline(req_raw.get("account_age_denied_message")),
            time_on_server_minutes=_optional_float(req_raw.get("time_on_server_minutes")),
            time_on_server_denied_message=_read_multiline(req_raw.get("time_on_server_denied_message")),
        ),
        relay=RelayConfig(
            prefix=str(relay_raw["prefix"]),
            use_nicknames=bool(relay_raw["use_nicknames"]),
            use_display_names=bool(relay_raw["use_display_names"]),
            break_formatting_for_names=bool(relay_raw["break_formatting_for_names"]),
            relay_inline_replies=bool(relay_raw["relay_inline_replies"]),
            fallback_role_name=_optional_str(relay_raw.get("fallback_role_name")),
            override_role_name_display=_optional_str(relay_raw.get("override_role_name_display")),
            thread_timestamps=bool(relay_raw["thread_timestamps"]),
            react_on_seen=bool(relay_raw["react_on_seen"]),
            react_on_seen_emoji=str(relay_raw["react_on_seen_emoji"]),
            relay_small_attachments_as_attachments=bool(relay_raw["relay_small_attachments_as_attachments"]),
            small_attachment_limit=int(relay_raw["small_attachment_limit"]),
            auto_alert=bool(relay_raw["auto_alert"]),
            auto_alert_delay=str(relay_raw["auto_alert_delay"]),
            close_message=_read_multiline(relay_raw.get("close_message")),
            response_message=_read_multiline(relay_raw.get("response_message")),
            show_response_message_in_thread_channel=bool(relay_raw["show_response_message_in_thread_channel"]),
            allow_suspend=bool(relay_raw["allow_suspend"]),
            allow_staff_edit=bool(relay_raw["allow_staff_edit"]),
            allow_staff_delete=bool(relay_raw["allow_staff_delete"]),
            update_messages_live=bool(relay_raw["update_messages_live"]),
            ignore_accidental_threads=bool(relay_raw["ignore_accidental_threads"]),
            mention_user_in_thread_header=bool(relay_raw["mention_user_in_thread_header"]),
        ),
        snippets=SnippetConfig(
            allow_inline=bool(snippets_raw["allow_inline"]),
            inline_start=str(snippets_raw["inline_start"]),
            inline_end=str(snippets_raw["inline_end"]),
            error_on_unknown_inline=bool(snippets_raw["error_on_unknown_inline"]),
        ),
        attachments=AttachmentConfig(
            storage=AttachmentStorageType(str(att_raw["storage"])),
            directory=str(att_raw["directory"]),
            storage_channel_id=_optional_str(att_raw.get("storage_channel_id")),
            max_retries=int(att_raw.get("max_retries", ATTACHMENT_MAX_RETRIES)),
        ),
        logs=LogConfig(
            storage=LogStorageType(str(logs_raw["storage"])),
            attachment_directory=str(logs_raw["attachment_directory"]),
        ),
        web=WebConfig(url=str(raw["web"]["url"]).rstrip("/")),
        scanner=ScannerConfig(
            poll_interval_s=float(raw["scanner"].get("poll_interval_s", SCANNER_POLL_INTERVAL_S)),
        ),
    )


def load_config(path: Path) -> Config:
    """Load, expand, and merge a config.yml over the defaults.

    Args:
        path: Path to the YAML file

    Returns:
        Typed Config
    """
    with open(path, encoding="utf-8") as f:
        raw_user_config = yaml.safe_load(f)

    user_config: Any = expand_env_vars(raw_user_config) if isinstance(raw_user_config, dict) else {}
    merged = _deep_merge(expand_env_vars(DEFAULT_CONFIG), user_config)  # type: ignore[arg-type]
    return _build_config(merged)


# Load config.yml from project root (required)
_config_env_path = os.getenv("MODMAIL_CONFIG_PATH")
_config_path = Path(_config_env_path).expanduser() if _config_env_path else _project_root / "config.yml"
if not _config_path.is_absolute():
    _config_path = (_project_root / _config_path).resolve()

if not _config_path.exists():
    raise FileNotFoundError(
        f"Config file not found: {_config_path}. "
        "Set MODMAIL_CONFIG_PATH to a valid config (e.g., tests/config.yml) or copy config.sample.yml to config.yml."
    )

config = load_config(_config_path)

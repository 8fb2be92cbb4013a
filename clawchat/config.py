"""
ClawChat Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except Exception:
        pass


def _setting(name: str, default):
    return os.getenv(f"CLAWCHAT_{name}", config_data.get(name, default))


def _flag(name: str, default: str) -> bool:
    return str(_setting(name, default)).lower() in {"1", "true", "yes"}


# SQLite database file
DB_PATH = os.getenv("CLAWCHAT_DB") or config_data.get("DB_PATH") or str(BASE_DIR / "data" / "chat.db")

# Public (browser-facing) server
HOST = _setting("HOST", "127.0.0.1")
PORT = int(_setting("PORT", "3102"))

# Agent-facing server - localhost only, never exposed through the public app
AGENT_HOST = _setting("AGENT_HOST", "127.0.0.1")
AGENT_PORT = int(_setting("AGENT_PORT", "3100"))

# Base URL of the external agent process (receives POST /events)
AGENT_URL = str(_setting("AGENT_URL", "http://127.0.0.1:3200")).rstrip("/")

APPS_DIR = _setting("APPS_DIR", str(BASE_DIR / "apps"))
# Uploaded attachments and agent-provided assets, served at /chat-public
CHAT_PUBLIC_DIR = _setting("CHAT_PUBLIC_DIR", str(BASE_DIR / "data" / "chat-public"))
UPLOAD_MAX_BYTES = int(_setting("UPLOAD_MAX_BYTES", str(100 * 1024 * 1024)))
# Editable prompt files (<name>.md) exposed at /api/prompts
PROMPTS_DIR = _setting("PROMPTS_DIR", str(BASE_DIR / "data" / "prompts"))
APP_NAME = _setting("APP_NAME", "ClawChat")
BASE_URL = str(_setting("BASE_URL", f"http://localhost:{PORT}")).rstrip("/")

# SSE keep-alive comment interval (seconds)
SSE_HEARTBEAT_INTERVAL = float(_setting("SSE_HEARTBEAT_INTERVAL", "30"))
# Frames buffered per subscriber before the sink is treated as broken
SSE_QUEUE_SIZE = int(_setting("SSE_QUEUE_SIZE", "256"))
# Delay before a client re-opens a dropped event stream (seconds)
SSE_RECONNECT_DELAY = float(_setting("SSE_RECONNECT_DELAY", "3"))
# Clients re-read the agent's work state this often (seconds)
AGENT_STATE_POLL_INTERVAL = float(_setting("AGENT_STATE_POLL_INTERVAL", "30"))

# Outbound agent calls (seconds)
AGENT_NOTIFY_TIMEOUT = float(_setting("AGENT_NOTIFY_TIMEOUT", "10"))
AGENT_PROBE_TIMEOUT = float(_setting("AGENT_PROBE_TIMEOUT", "2"))
AGENT_PROXY_TIMEOUT = float(_setting("AGENT_PROXY_TIMEOUT", "3"))
AGENT_STOP_TIMEOUT = float(_setting("AGENT_STOP_TIMEOUT", "5"))

# Widget app state: max UTF-8 size of the compact JSON encoding
APP_STATE_MAX_BYTES = int(_setting("APP_STATE_MAX_BYTES", str(1024 * 1024)))
# Widget request() calls reject locally after this many seconds
WIDGET_REQUEST_TIMEOUT = float(_setting("WIDGET_REQUEST_TIMEOUT", "30"))

MESSAGE_PAGE_SIZE = int(_setting("MESSAGE_PAGE_SIZE", "100"))

# Session-cookie gate on the public app
AUTH_ENABLED = _flag("AUTH_ENABLED", "true")
SESSION_TTL_DAYS = int(_setting("SESSION_TTL_DAYS", "365"))
INVITE_TTL_MINUTES = int(_setting("INVITE_TTL_MINUTES", str(24 * 60)))

VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "AGENT_HOST": AGENT_HOST,
        "AGENT_PORT": AGENT_PORT,
        "AGENT_URL": AGENT_URL,
        "APP_NAME": APP_NAME,
        "SSE_HEARTBEAT_INTERVAL": SSE_HEARTBEAT_INTERVAL,
        "MESSAGE_PAGE_SIZE": MESSAGE_PAGE_SIZE,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)

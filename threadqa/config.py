"""
ThreadQA Configuration
"""
import os
import json
import shlex
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file holding thread -> session mappings
_repo_default_db = BASE_DIR / "data" / "sessions.db"
_user_default_db = Path.home() / ".threadqa" / "sessions.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("THREADQA_DB"):
    DB_PATH = os.getenv("THREADQA_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only for security
HOST = os.getenv("THREADQA_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("THREADQA_PORT", config_data.get("PORT", "39780")))

# Agent runtime (OpenCode-compatible HTTP + SSE server)
RUNTIME_URL = os.getenv("THREADQA_RUNTIME_URL", config_data.get("RUNTIME_URL", "http://127.0.0.1:4096"))
# Timeout (seconds) for non-streaming runtime calls. The agent may run long
# shell commands (find, grep across a large repo) before answering.
RUNTIME_REQUEST_TIMEOUT = float(os.getenv("THREADQA_REQUEST_TIMEOUT", "600"))

# Hard ceiling on a single question/answer exchange (seconds)
EXCHANGE_TIMEOUT = float(os.getenv("THREADQA_EXCHANGE_TIMEOUT", "600"))
# After the answer is captured, how long to wait for a compaction signal (seconds)
COMPACTION_GRACE = float(os.getenv("THREADQA_COMPACTION_GRACE", "30"))
# Minimum spacing between outward progress notifications (seconds)
PROGRESS_INTERVAL = float(os.getenv("THREADQA_PROGRESS_INTERVAL", "2.0"))

# Rate limiting: max questions per user per window (0 = disabled)
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("THREADQA_RATE_LIMIT", "20"))
RATE_LIMIT_WINDOW = int(os.getenv("THREADQA_RATE_LIMIT_WINDOW", "3600"))
RATE_LIMIT_ENABLED = RATE_LIMIT_MAX_REQUESTS > 0

# Human-readable name of the repository the agent explores
TARGET_REPO = os.getenv("TARGET_REPO", "the target repository")

# Optional: spawn and supervise the agent runtime from this process
SPAWN_RUNTIME = os.getenv("THREADQA_SPAWN_RUNTIME", "false").lower() in {"1", "true", "yes"}
REPO_DIR = os.getenv("THREADQA_REPO_DIR", ".")
RUNTIME_COMMAND = shlex.split(os.getenv("THREADQA_RUNTIME_COMMAND", "opencode serve"))

# Max wait for a single store call from the HTTP layer (seconds)
DB_TIMEOUT = float(os.getenv("THREADQA_DB_TIMEOUT", "5"))

# Max length for per-channel custom instructions
MAX_CUSTOM_PROMPT_LENGTH = 1000

VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "RUNTIME_URL": RUNTIME_URL,
        "EXCHANGE_TIMEOUT": EXCHANGE_TIMEOUT,
        "COMPACTION_GRACE": COMPACTION_GRACE,
        "PROGRESS_INTERVAL": PROGRESS_INTERVAL,
        "RATE_LIMIT_ENABLED": RATE_LIMIT_ENABLED,
        "RATE_LIMIT_MAX_REQUESTS": RATE_LIMIT_MAX_REQUESTS,
        "RATE_LIMIT_WINDOW": RATE_LIMIT_WINDOW,
        "SPAWN_RUNTIME": SPAWN_RUNTIME,
    }

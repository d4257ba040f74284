"""
config.py — Runtime configuration

Every setting is a module-level constant read from the environment once at
import. A `.env` file in the working directory is loaded first so local
credentials never need to be exported by hand.
"""

import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_list(name: str, default: str) -> List[str]:
    raw = os.environ.get(name, default)
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return default


# ── Snapshot storage ──────────────────────────────────────────────────────────

INVENTORY_DIR = os.environ.get("INVENTORY_DIR", os.path.join(".", "shopify", "inventory"))
INVENTORY_FORMATS = _env_list("INVENTORY_FORMATS", "xlsx,md")
FRESHNESS_HOURS = _env_float("INVENTORY_FRESHNESS_HOURS", 24.0)

# ── Commerce platforms ────────────────────────────────────────────────────────

SHOPIFY_STORE = os.environ.get("SHOPIFY_STORE", "")
SHOPIFY_ACCESS_TOKEN = os.environ.get("SHOPIFY_ACCESS_TOKEN", "")
SHOPIFY_API_VERSION = os.environ.get("SHOPIFY_API_VERSION", "2023-10")

ETSY_API_KEY = os.environ.get("ETSY_API_KEY", "")
ETSY_ACCESS_TOKEN = os.environ.get("ETSY_ACCESS_TOKEN", "")
ETSY_SHOP_ID = os.environ.get("ETSY_SHOP_ID", "")

# ── Language model ────────────────────────────────────────────────────────────

LLM_PROVIDER = os.environ.get("LLM_PROVIDER", "ollama").lower()
OLLAMA_BASE_URL = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL", "")
OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", "")
OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4o-mini")

LLM_TIMEOUT = _env_float("LLM_TIMEOUT", 60.0)             # seconds per provider call
RUN_POLL_INTERVAL = _env_float("RUN_POLL_INTERVAL", 1.0)  # seconds between run status polls
RUN_POLL_TIMEOUT = _env_float("RUN_POLL_TIMEOUT", 120.0)
MAX_TOOL_ROUNDS = int(_env_float("MAX_TOOL_ROUNDS", 4))

# ── Execution server & local state ────────────────────────────────────────────

ENGINE_SCRIPT = os.environ.get("ENGINE_SCRIPT", "engine.py")
VECTOR_DIR = os.environ.get("VECTOR_DIR", ".vectors")
AGENT_STATE_FILE = os.environ.get("AGENT_STATE_FILE", ".agent.thread")
SEARCH_STATE_FILE = os.environ.get("SEARCH_STATE_FILE", ".rag.thread")

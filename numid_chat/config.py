from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent
ROOT_DIR = BASE_DIR.parent

DEFAULT_SYSTEM_PROMPT = (
    "You are a concise, helpful AI. Use Markdown formatting with headings, lists, and bold where useful. "
    "Understand and respond in the user's language automatically (Bangla, Banglish, English). "
    "Keep answers clear; use bullet points for steps/lists; include short code blocks when appropriate."
)

API_KEY_ENV = "GOOGLE_GEMINI_API_KEY"


@dataclass(frozen=True)
class Settings:
    """Configuration container for the upstream model, server and client storage."""
    gemini_api_key: str
    default_model: str
    system_prompt: str
    stream_queue_size: int
    host: str
    port: int
    log_level: str
    sessions_path: Path


def configure_logging(level_name: str) -> None:
    """Configure root logging once and set the `numid` namespace level."""
    log_level = getattr(logging, level_name.upper(), logging.INFO)
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    logging.getLogger("numid").setLevel(log_level)


def load_env() -> None:
    """Load `.env` files from the project root and the package directory, if present."""
    for env_path in (ROOT_DIR / ".env", BASE_DIR / ".env"):
        if env_path.exists():
            load_dotenv(env_path, override=False)


def load_settings(env_loaded: Optional[bool] = None) -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: Optional flag to skip `.env` loading; returns a Settings instance.
    Side Effects / State: Reads `.env` files and environment variables.
    Failure Modes: Invalid PORT/STREAM_QUEUE_SIZE values raise ValueError.
    The API key is not validated here; the Gemini client checks it on first use.
    """
    if not env_loaded:
        load_env()

    sessions_path = os.getenv("SESSIONS_PATH")
    if sessions_path:
        sessions_file = Path(sessions_path).expanduser()
    else:
        sessions_file = Path.home() / ".numid_chat" / "storage.json"

    queue_size = int(os.getenv("STREAM_QUEUE_SIZE", "64"))
    if queue_size <= 0:
        raise ValueError("STREAM_QUEUE_SIZE must be positive")

    return Settings(
        gemini_api_key=os.getenv(API_KEY_ENV) or os.getenv("GEMINI_API_KEY", ""),
        default_model=os.getenv("DEFAULT_MODEL", "gemini-2.5-flash"),
        system_prompt=os.getenv("SYSTEM_PROMPT") or DEFAULT_SYSTEM_PROMPT,
        stream_queue_size=queue_size,
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "3001")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        sessions_path=sessions_file,
    )

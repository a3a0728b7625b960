"""Runtime configuration loaded from the environment and .env files."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


BACKEND_DIR = Path(__file__).resolve().parent
DEFAULT_LOCAL_DB_PATH = BACKEND_DIR / "xingce_local.db"
DEFAULT_SERVER_DB_PATH = BACKEND_DIR / "xingce_server.db"
DEFAULT_API_URL = "http://localhost:8080"
DEFAULT_IMAGE_THRESHOLD = 500
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_ARK_MODEL = "doubao-seed-1-6-flash-250828"
STORAGE_MODES = {"local", "cloud"}

# Load env vars from project .env and user home .env if present.
load_dotenv(BACKEND_DIR / ".env")
load_dotenv(Path.home() / ".env")


def _clean(raw: str) -> str:
    return raw.strip().strip('"').strip("'")


def _int_env(name: str, default: int) -> int:
    raw = _clean(os.environ.get(name, ""))
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}.")


@dataclass
class Settings:
    storage_mode: str = "local"
    local_db_path: Path = DEFAULT_LOCAL_DB_PATH
    server_db_path: Path = DEFAULT_SERVER_DB_PATH
    api_url: str = DEFAULT_API_URL
    image_threshold: int = DEFAULT_IMAGE_THRESHOLD
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    ark_api_key: str = ""
    ark_model: str = DEFAULT_ARK_MODEL

    @property
    def cloud_enabled(self) -> bool:
        return self.storage_mode == "cloud"


def get_ark_api_key() -> str:
    raw = os.environ.get("ARK_API_KEY", "") or os.environ.get("API_KEY", "")
    return _clean(raw)


def load_settings() -> Settings:
    mode = _clean(os.environ.get("XINGCE_STORAGE_MODE", "local")).lower() or "local"
    if mode not in STORAGE_MODES:
        raise ValueError("XINGCE_STORAGE_MODE must be either 'local' or 'cloud'.")

    local_db = _clean(os.environ.get("XINGCE_DB_PATH", ""))
    server_db = _clean(os.environ.get("XINGCE_SERVER_DB_PATH", ""))
    return Settings(
        storage_mode=mode,
        local_db_path=Path(local_db).expanduser() if local_db else DEFAULT_LOCAL_DB_PATH,
        server_db_path=Path(server_db).expanduser() if server_db else DEFAULT_SERVER_DB_PATH,
        api_url=_clean(os.environ.get("XINGCE_API_URL", "")) or DEFAULT_API_URL,
        image_threshold=_int_env("XINGCE_IMAGE_THRESHOLD", DEFAULT_IMAGE_THRESHOLD),
        request_timeout=_int_env("XINGCE_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
        ark_api_key=get_ark_api_key(),
        ark_model=_clean(os.environ.get("ARK_MODEL", "")) or DEFAULT_ARK_MODEL,
    )

"""Application-wide configuration constants.

Every value can be overridden with a ``PASSDROP_<NAME>`` environment variable.
"""

import os
import string
from pathlib import Path


def _env(name: str, default: str) -> str:
    return os.environ.get(f"PASSDROP_{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "1" if default else "0").lower() in ("1", "true", "yes", "on")


# --- Identity ---
APP_ID = "passdrop-v1"

# --- Networking ---
API_HOST = _env("API_HOST", "0.0.0.0")
API_PORT = int(_env("API_PORT", "8765"))
API_URL = _env("API_URL", f"http://127.0.0.1:{API_PORT}")
RELAY_URL = _env("RELAY_URL", f"ws://127.0.0.1:{API_PORT}/ws")
CONNECT_TIMEOUT = float(_env("CONNECT_TIMEOUT", "10"))  # seconds

# Base64 of one full chunk is ~1.4 MB, plus JSON envelope
MAX_FRAME_SIZE = int(_env("MAX_FRAME_SIZE", str(4 * 1024 * 1024)))

# --- Pairing ---
# No 0/O or 1/I so codes survive being read aloud
PASSCODE_ALPHABET = "".join(
    c for c in string.ascii_uppercase + string.digits if c not in "01IO"
)
PASSCODE_LENGTH = int(_env("PASSCODE_LENGTH", "6"))
PASSCODE_TTL = float(_env("PASSCODE_TTL", "600"))  # seconds a code may sit unpaired
SWEEP_INTERVAL = float(_env("SWEEP_INTERVAL", "30"))  # seconds
ALLOW_UNISSUED_PASSCODES = _env_bool("ALLOW_UNISSUED_PASSCODES", False)

# --- Transfer ---
CHUNK_SIZE = int(_env("CHUNK_SIZE", str(1024 * 1024)))  # 1 MiB raw bytes
ACK_TIMEOUT = float(_env("ACK_TIMEOUT", "30"))  # seconds
COMPLETE_DISPLAY_DELAY = float(_env("COMPLETE_DISPLAY_DELAY", "1.2"))  # seconds
TRANSFER_DEADLINE_BASE = float(_env("TRANSFER_DEADLINE_BASE", "60"))  # seconds
TRANSFER_DEADLINE_PER_CHUNK = float(_env("TRANSFER_DEADLINE_PER_CHUNK", "10"))  # seconds

# --- Storage ---
DEFAULT_SAVE_DIR = _env(
    "SAVE_DIR", str(Path.home() / "Downloads" / "Passdrop")
)

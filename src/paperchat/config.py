import os
from pathlib import Path

# This calculates the absolute path to the project's root directory
# It starts from this file's location (.../src/paperchat/config.py) and goes up three levels.
ROOT_DIR = Path(__file__).resolve().parent.parent.parent

# User data lives outside the source tree; PAPERCHAT_HOME relocates all of it.
DATA_DIR = Path(os.environ.get("PAPERCHAT_HOME", "~/.paperchat")).expanduser()
CONVERSATIONS_DIR = DATA_DIR / "conversations"
LOGS_DIR = DATA_DIR / "logs"
SETTINGS_FILE = DATA_DIR / "user_settings.json"
PROMPT_TEMPLATES_DIR = ROOT_DIR / "src" / "paperchat" / "prompts" / "templates"

# Streaming persistence: write when either limit is reached, whichever comes first.
SAVE_INTERVAL_SECONDS = 0.5
SAVE_EVERY_N_CHUNKS = 10

# Document text folded into a prompt is truncated to this many characters (<= 0 disables).
DEFAULT_PDF_MAX_CHARS = 50000

# Identical selections reported within this window are treated as one.
SELECTION_DEDUP_SECONDS = 0.1

# (connect, read) timeouts handed to requests; the read timeout applies between chunks.
REQUEST_TIMEOUT_SECONDS = (10, 300)

DEFAULT_PROVIDER_ID = "openai"
GLOBAL_ITEM_ID = 0

import os
from pathlib import Path

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.environ.get("DATA_DIR", str(PROJECT_DIR / "data")))
SQLITE_PATH = DATA_DIR / "conversations.db"

PORT = int(os.environ.get("PORT", "19877"))
ROOT_PATH = os.environ.get("ROOT_PATH", "")

API_BASE_URL = os.environ.get("API_BASE_URL", "http://127.0.0.1:3000/")
CHAT_PATH = "/api/dify/chat-messages"
CREDITS_BALANCE_PATH = "/api/credits/balance"
CREDITS_SETTLE_PATH = "/api/credits/settle"
AUTH_TOKEN = os.environ.get("AUTH_TOKEN") or None
USER_ID = os.environ.get("USER_ID", "default_user")

LEDGER_MODE = os.environ.get("LEDGER_MODE", "memory")
INITIAL_CREDITS = int(os.environ.get("INITIAL_CREDITS", "100"))
TURN_COST = int(os.environ.get("TURN_COST", "1"))

REQUEST_TIMEOUT_SECS = 30
STREAM_READ_TIMEOUT_SECS = float(os.environ.get("STREAM_READ_TIMEOUT_SECS", "60"))
CANCEL_GRACE_SECS = 2.0
MAX_TITLE_LENGTH = 80
DEFAULT_TITLE = "New conversation"

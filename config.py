import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Define the root directory of the project
ROOT_DIR = Path(__file__).resolve().parent

# Where project documents are stored
DATA_DIR = Path(os.getenv("APICANVAS_DATA_DIR", ROOT_DIR / "data"))

# Quiet period before a local edit is persisted (seconds)
SAVE_DEBOUNCE_SECONDS = float(os.getenv("APICANVAS_SAVE_DEBOUNCE", "1.0"))

# A server-side canvas session with no other members is closed after this long without requests (seconds)
SESSION_IDLE_SECONDS = float(os.getenv("APICANVAS_SESSION_IDLE", "300"))

# Comma-separated, or "*" for all (development only)
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

# OpenAPI export defaults
OPENAPI_VERSION = "3.0.0"
OPENAPI_TITLE = "Generated API"
OPENAPI_INFO_VERSION = "1.0.0"
DEFAULT_SUMMARY = "No summary"
DEFAULT_MODEL_NAME = "UnnamedModel"

# Lines kept for /api/logs
LOG_BUFFER_SIZE = 100

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, SecretStr

from .errors import MissingCredential

# Load env early
load_dotenv()

# --- Postman API ---
POSTMAN_API_URL = os.environ.get("POSTMAN_API_URL", "https://api.getpostman.com")
POSTMAN_APP_URL = os.environ.get("POSTMAN_APP_URL", "https://go.postman.co")

# --- Gemini ---
GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-2.0-flash")

# --- Concurrency & retries for remote calls ---
MAX_CONCURRENCY = int(os.environ.get("REQFORGE_MAX_CONCURRENCY", "4"))
MAX_ATTEMPTS = int(os.environ.get("REQFORGE_MAX_ATTEMPTS", "3"))
RETRY_BACKOFF_MS = int(os.environ.get("REQFORGE_RETRY_BACKOFF_MS", "500"))
HTTP_TIMEOUT_S = float(os.environ.get("REQFORGE_HTTP_TIMEOUT_S", "30"))

# --- Redis (run history) ---
REDIS_HOST = os.environ.get("REDIS_HOST", "localhost")
REDIS_PORT = int(os.environ.get("REDIS_PORT", "6379"))
REDIS_PASSWORD = os.environ.get("REDIS_PASSWORD")  # optional
REDIS_SSL = bool(int(os.environ.get("REDIS_SSL", "0")))

# --- MCP server ---
AUTH_TOKEN = os.environ.get("AUTH_TOKEN", "dev-token")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8086"))


class Credentials(BaseModel):
    """API keys handed to the store and the generator. Nothing reads keys from the environment at call time."""

    postman_api_key: Optional[SecretStr] = None
    google_api_key: Optional[SecretStr] = None

    @classmethod
    def from_env(cls) -> "Credentials":
        return cls(
            postman_api_key=os.environ.get("POSTMAN_API_KEY") or None,
            google_api_key=os.environ.get("GOOGLE_API_KEY") or None,
        )

    def require_postman_key(self) -> str:
        if not self.postman_api_key or not self.postman_api_key.get_secret_value():
            raise MissingCredential("POSTMAN_API_KEY")
        return self.postman_api_key.get_secret_value()

    def require_google_key(self) -> str:
        if not self.google_api_key or not self.google_api_key.get_secret_value():
            raise MissingCredential("GOOGLE_API_KEY")
        return self.google_api_key.get_secret_value()

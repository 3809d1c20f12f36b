# config.py
# Loads environment variables from the .env file and makes them available.
import os
from typing import Optional

from dotenv import load_dotenv, find_dotenv
from loguru import logger

# --- Load .env file ---
dotenv_path = find_dotenv(usecwd=True)
if not dotenv_path:
    logger.info(".env file not found. Relying on system environment variables.")
else:
    logger.info(f"Loading environment variables from: {dotenv_path}")
    load_dotenv(dotenv_path=dotenv_path)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid value for {name}: {raw!r}. Using default {default}.")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# --- Google Generative AI (Gemini) API Key ---
# Fetched from Google Cloud Secret Manager when the secret coordinates are set,
# otherwise read from GOOGLE_API_KEY.
GEMINI_API_KEY_PROJECT_ID: Optional[str] = os.environ.get('GEMINI_API_KEY_PROJECT_ID')
GEMINI_API_KEY_SECRET_ID: Optional[str] = os.environ.get('GEMINI_API_KEY_SECRET_ID')
GEMINI_API_KEY_VERSION_ID: str = os.environ.get('GEMINI_API_KEY_VERSION_ID', 'latest')

_google_api_key_cache: Optional[str] = None


def fetch_secret(project_id: str, secret_id: str, version_id: str = "latest") -> Optional[str]:
    """Reads a secret payload from Google Cloud Secret Manager, or None on any failure."""
    from google.cloud import secretmanager

    secret_name = f"projects/{project_id}/secrets/{secret_id}/versions/{version_id}"
    try:
        client = secretmanager.SecretManagerServiceClient()
        response = client.access_secret_version(name=secret_name)
        logger.info(f"Fetched secret '{secret_id}' (version: {version_id}).")
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.error(f"Failed to fetch secret {secret_name}: {e}")
        return None


def get_google_api_key() -> Optional[str]:
    """Returns the Gemini API key, fetching it from Secret Manager once and caching it."""
    global _google_api_key_cache
    if _google_api_key_cache is None:
        if GEMINI_API_KEY_PROJECT_ID and GEMINI_API_KEY_SECRET_ID:
            _google_api_key_cache = fetch_secret(
                project_id=GEMINI_API_KEY_PROJECT_ID,
                secret_id=GEMINI_API_KEY_SECRET_ID,
                version_id=GEMINI_API_KEY_VERSION_ID,
            )
        if not _google_api_key_cache:
            _google_api_key_cache = os.environ.get('GOOGLE_API_KEY')
        if not _google_api_key_cache:
            logger.warning("No Gemini API key available. The 'googleai' provider will be unavailable.")
    return _google_api_key_cache


DEEPSEEK_API_KEY = os.environ.get('DEEPSEEK_API_KEY')
OPENAI_API_KEY = os.environ.get('OPENAI_API_KEY')

# --- Entry store ---
ENTRY_STORE_BACKEND = os.environ.get('ENTRY_STORE_BACKEND', 'memory')  # 'memory' or 'firestore'
ENTRIES_COLLECTION = os.environ.get('ENTRIES_COLLECTION', 'entries')
GCLOUD_PROJECT = os.environ.get('GCLOUD_PROJECT')
FIRESTORE_DATABASE_ID = os.environ.get('FIRESTORE_DATABASE_ID')

# --- Text generation ---
DEFAULT_LLM_PROVIDER = os.environ.get('DEFAULT_LLM_PROVIDER', 'googleai')  # 'googleai' or 'deepseek'
DEFAULT_GOOGLE_MODEL = os.environ.get('DEFAULT_GOOGLE_MODEL', 'gemini-1.5-flash-latest')
DEFAULT_DEEPSEEK_MODEL = os.environ.get('DEFAULT_DEEPSEEK_MODEL', 'deepseek-chat')
MAX_MEANINGS = int(_env_float('MAX_MEANINGS', 5))

# --- Image generation ---
IMAGE_MODEL = os.environ.get('IMAGE_MODEL', 'dall-e-3')
IMAGE_SIZE = os.environ.get('IMAGE_SIZE', '1024x1024')
IMAGE_TIMEOUT_SECONDS = _env_float('IMAGE_TIMEOUT_SECONDS', 60.0)
FALLBACK_IMAGE_URL = os.environ.get('FALLBACK_IMAGE_URL', 'https://placehold.co/512x512/png?text=No+image')

# --- Reconciliation polling ---
POLL_INTERVAL_SECONDS = _env_float('POLL_INTERVAL_SECONDS', 2.0)
POLL_TIMEOUT_SECONDS = _env_float('POLL_TIMEOUT_SECONDS', 30.0)

RESUME_PENDING_ON_STARTUP = _env_bool('RESUME_PENDING_ON_STARTUP', True)

# --- Application Version ---
APP_VERSION: str = "1.0.0"

logger.info(
    f"Configuration loaded: store={ENTRY_STORE_BACKEND}, llm_provider={DEFAULT_LLM_PROVIDER}, "
    f"image_model={IMAGE_MODEL}, poll={POLL_INTERVAL_SECONDS}s/{POLL_TIMEOUT_SECONDS}s"
)

# /contentquery/config.py
"""
Centralized configuration for the content analysis service.
Includes completion endpoint settings, the model credential table, chunking
limits, storage paths and server options.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .errors import ConfigurationError
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


def _env_list(name: str, default: list[str], sep: str = ",") -> list[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return list(default)
    return [item.strip() for item in raw.split(sep) if item.strip()]


# ==============================================================================
# COMPLETION ENDPOINT
# ==============================================================================
COMPLETION_BASE_URL = os.getenv("COMPLETION_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")
COMPLETION_API_KEY = os.getenv("COMPLETION_API_KEY") or os.getenv("OPENROUTER_API_KEY", "")
COMPLETION_APP_URL = os.getenv("COMPLETION_APP_URL", "https://localhost:5000")
COMPLETION_APP_TITLE = os.getenv("COMPLETION_APP_TITLE", "ContentQuery AI")

# --- Model priority order (first entry is tried first) ---
DEFAULT_MODELS = [
    "qwen/qwen3-4b:free",
    "meta-llama/llama-3.1-8b-instruct:free",
    "microsoft/phi-3-mini-128k-instruct:free",
    "google/gemma-2-9b-it:free",
]
COMPLETION_MODELS = _env_list("COMPLETION_MODELS", DEFAULT_MODELS)

# --- Per-model credential overrides: "model=ENV_VAR;model2=ENV_VAR2" ---
MODEL_CREDENTIALS = os.getenv("MODEL_CREDENTIALS", "")

# --- Sampling / budget ---
COMPLETION_TEMPERATURE = _env_float("COMPLETION_TEMPERATURE", 0.7, minimum=0.0)
COMPLETION_MAX_TOKENS = _env_int("COMPLETION_MAX_TOKENS", 2000, minimum=64)

# --- Timeouts ---
LLM_REQUEST_TIMEOUT_S = _env_float("LLM_REQUEST_TIMEOUT_S", 60.0, minimum=1.0)
FETCH_TIMEOUT_S = _env_float("FETCH_TIMEOUT_S", 20.0, minimum=1.0)

# ==============================================================================
# CONTENT PIPELINE
# ==============================================================================
# --- Chunking Configuration ---
MAX_CHUNK_SIZE = _env_int("MAX_CHUNK_SIZE", 6000, minimum=200)
CHUNK_OVERLAP = _env_int("CHUNK_OVERLAP", 200, minimum=0)
if CHUNK_OVERLAP >= MAX_CHUNK_SIZE:
    raise ConfigurationError(
        f"CHUNK_OVERLAP ({CHUNK_OVERLAP}) must be smaller than MAX_CHUNK_SIZE ({MAX_CHUNK_SIZE})"
    )

# --- Retrieval / fan-out tuning ---
RELEVANT_CHUNK_LIMIT = _env_int("RELEVANT_CHUNK_LIMIT", 3, minimum=1)
ANALYSIS_MAX_CHUNKS = _env_int("ANALYSIS_MAX_CHUNKS", 6, minimum=1)
ANALYSIS_CONCURRENCY = _env_int("ANALYSIS_CONCURRENCY", 4, minimum=1)
MCQ_MAX_CHUNKS = _env_int("MCQ_MAX_CHUNKS", 3, minimum=1)
MCQ_MAX_QUESTIONS = _env_int("MCQ_MAX_QUESTIONS", 50, minimum=1)
CONVERSATION_HISTORY_LIMIT = _env_int("CONVERSATION_HISTORY_LIMIT", 10, minimum=0)

# --- Acquisition floors ---
MIN_URL_CONTENT_CHARS = _env_int("MIN_URL_CONTENT_CHARS", 100, minimum=1)
MIN_PDF_CONTENT_CHARS = _env_int("MIN_PDF_CONTENT_CHARS", 50, minimum=1)
MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024, minimum=1024)
FETCH_USER_AGENT = os.getenv(
    "FETCH_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36",
)

# ==============================================================================
# STORAGE & SERVER
# ==============================================================================
# Data directory is at ../../data relative to this file (src/contentquery/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(_BASE_DIR / "data")))
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(DATA_DIR / "uploads")))
METRICS_DIR = Path(os.getenv("METRICS_DIR", str(DATA_DIR / "logs")))

SESSION_STORE = os.getenv("SESSION_STORE", "memory").strip().lower()
SESSION_DB_PATH = Path(os.getenv("SESSION_DB_PATH", str(DATA_DIR / "sessions.sqlite")))

CORS_ORIGINS = _env_list("UI_ORIGIN", ["http://localhost:5173", "http://localhost:5000"])
HOST = os.getenv("HOST", "0.0.0.0").strip() or "0.0.0.0"
PORT = _env_int("PORT", 5000, minimum=1)
RELOAD = _env_bool("RELOAD", False)

LOG_PATH = Path(os.getenv("LOG_PATH", str(DATA_DIR / "logs" / "app.log")))
configure_logging(LOG_PATH)


# ==============================================================================
# MODEL CREDENTIAL TABLE
# ==============================================================================
@dataclass(frozen=True)
class ModelCredential:
    model_id: str
    credential_ref: str
    api_key: str

    def __repr__(self) -> str:
        return f"ModelCredential(model_id={self.model_id!r}, credential_ref={self.credential_ref!r})"


def parse_credential_overrides(raw: str) -> dict[str, str]:
    """Parses `model=ENV_VAR;model2=ENV_VAR2` into a model -> env var mapping."""
    overrides: dict[str, str] = {}
    for entry in str(raw or "").split(";"):
        entry = entry.strip()
        if not entry:
            continue
        model_id, sep, env_name = entry.rpartition("=")
        if not sep or not model_id.strip() or not env_name.strip():
            raise ConfigurationError(f"Malformed MODEL_CREDENTIALS entry: {entry!r}")
        overrides[model_id.strip()] = env_name.strip()
    return overrides


def resolve_model_credentials(
    models: list[str] | None = None,
    overrides: str | None = None,
    default_key: str | None = None,
    environ: dict[str, str] | None = None,
) -> tuple[ModelCredential, ...]:
    """
    Resolves the credential for every configured model once, at startup.
    Raises ConfigurationError for a missing referenced credential instead of
    letting the model fail on each request.
    """
    env = os.environ if environ is None else environ
    model_ids = list(COMPLETION_MODELS if models is None else models)
    override_map = parse_credential_overrides(MODEL_CREDENTIALS if overrides is None else overrides)
    fallback_key = COMPLETION_API_KEY if default_key is None else default_key

    if not model_ids:
        raise ConfigurationError("No completion models configured (COMPLETION_MODELS is empty)")

    unknown = sorted(set(override_map) - set(model_ids))
    if unknown:
        raise ConfigurationError(f"MODEL_CREDENTIALS references unconfigured models: {', '.join(unknown)}")

    resolved: list[ModelCredential] = []
    seen: set[str] = set()
    for model_id in model_ids:
        if model_id in seen:
            continue
        seen.add(model_id)
        env_name = override_map.get(model_id)
        if env_name:
            api_key = str(env.get(env_name, "") or "").strip()
            if not api_key:
                raise ConfigurationError(
                    f"Credential {env_name} referenced for model {model_id} is not set"
                )
            resolved.append(ModelCredential(model_id, env_name, api_key))
            continue
        if not str(fallback_key or "").strip():
            raise ConfigurationError(
                f"No credential for model {model_id}: set COMPLETION_API_KEY or a MODEL_CREDENTIALS override"
            )
        resolved.append(ModelCredential(model_id, "COMPLETION_API_KEY", str(fallback_key).strip()))
    return tuple(resolved)

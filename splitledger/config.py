import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Secret key shared with the service that issues sessions
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")

    SESSION_COOKIE_NAME = os.environ.get("SESSION_COOKIE_NAME", "splitledger_session")
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    CORS_ORIGINS = [
        origin.strip()
        for origin in os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(",")
        if origin.strip()
    ]

    # Database config (defaults allow local run without crashing)
    DB_HOST = os.environ.get("DB_HOST", "localhost")
    DB_PORT = int(os.environ.get("DB_PORT", 3306))
    DB_USER = os.environ.get("DB_USER", "root")
    DB_PASSWORD = os.environ.get("DB_PASSWORD", "")
    DB_NAME = os.environ.get("DB_NAME", "splitledger")
    DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", 10))

    # Every statement is abandoned after this many seconds
    QUERY_TIMEOUT_SECONDS = int(os.environ.get("LEDGER_QUERY_TIMEOUT", 3))

    # "batch" or "cumulative", see splitledger.validation.AllocationPolicy
    ALLOCATION_POLICY = os.environ.get("LEDGER_ALLOCATION_POLICY", "batch")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_JSON = _env_bool("LOG_JSON", True)


config = Config()

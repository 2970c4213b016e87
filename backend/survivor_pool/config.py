"""
backend/survivor_pool/config.py

Purpose:
    Central settings loading for the survivor pool backend.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    # Transactions need a replica set (a single-node one is fine for dev).
    MONGO_URI: str = "mongodb://localhost:27017/?replicaSet=rs0"
    MONGO_DB: str = "survivor_pool"
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = 5000
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    # Game defaults (used when a create request omits a field)
    SURVIVOR_DEFAULT_CAPACITY: int = 100
    SURVIVOR_DEFAULT_START_WEEK: int = 1
    SURVIVOR_DEFAULT_END_WEEK: int = 18
    SURVIVOR_DEFAULT_TWO_PICK_WEEK: int = 12
    SURVIVOR_TIES_ELIMINATE: bool = True

    # Store transaction retry (TransientTransactionError / commit unknown)
    SURVIVOR_TRANSACTION_MAX_ATTEMPTS: int = 5

    # Results job
    SURVIVOR_AUTOMATION_ENABLED: bool = True
    SURVIVOR_RESULTS_INTERVAL_MINUTES: int = 15

    # Score feeds, tried in order. Known: espn, static
    SCORE_FEEDS: str = "espn,static"
    SCORE_FEED_TIMEOUT_SECONDS: float = 15.0
    ESPN_BASE_URL: str = "https://site.api.espn.com/apis/site/v2/sports/football/nfl"
    STATIC_SCHEDULE_PATH: str = ""

    # Event bus (in-process)
    EVENT_BUS_ENABLED: bool = True
    EVENT_BUS_INGRESS_QUEUE_MAXSIZE: int = 10000
    EVENT_BUS_HANDLER_QUEUE_MAXSIZE: int = 2000
    EVENT_BUS_HANDLER_DEFAULT_CONCURRENCY: int = 1
    EVENT_BUS_ERROR_BUFFER_SIZE: int = 200

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }

    def score_feed_names(self) -> list[str]:
        return [name.strip().lower() for name in self.SCORE_FEEDS.split(",") if name.strip()]


settings = Settings()

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parent.parent
load_dotenv(ROOT_DIR / '.env')


class Settings:
    """Runtime configuration read from the environment (and .env)."""

    def __init__(self, environ=None):
        env = os.environ if environ is None else environ
        self.mongo_url: str = env.get('MONGO_URL', 'mongodb://localhost:27017')
        self.db_name: str = env.get('DB_NAME', 'storyhub')
        self.cors_origins: List[str] = env.get('CORS_ORIGINS', '*').split(',')
        self.store_timeout: float = float(env.get('STORE_TIMEOUT_SECONDS', '10'))
        self.session_ttl_days: int = int(env.get('SESSION_TTL_DAYS', '7'))
        self.gemini_api_key: Optional[str] = env.get('GEMINI_API_KEY') or None
        self.gemini_model: str = env.get('GEMINI_MODEL', 'gemini-2.5-flash')
        self.oauth_session_url: str = env.get(
            'OAUTH_SESSION_URL',
            'https://auth.example.com/v1/oauth/session-data',
        )
        self.log_level: str = env.get('LOG_LEVEL', 'INFO').upper()


@lru_cache()
def get_settings() -> Settings:
    return Settings()

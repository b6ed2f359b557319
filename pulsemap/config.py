import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from .events import EventType

load_dotenv()

DEFAULT_CAPS = {
    EventType.EARTHQUAKE: 100,
    EventType.TSUNAMI: 100,
    EventType.VOLCANO: 100,
    EventType.WILDFIRE: 300,
    EventType.FLOOD: 100,
}

# Hours; None means the type is never swept by age.
DEFAULT_RETENTION_HOURS = {
    EventType.EARTHQUAKE: 24,
    EventType.WILDFIRE: 24,
    EventType.FLOOD: 72,
    EventType.TSUNAMI: 168,
    EventType.VOLCANO: None,
}


def env_flag(name, default='0'):
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes')


def _env_int(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("ignoring non-integer %s=%r", name, raw)
        return default


def database_url():
    url = os.getenv('DATABASE_URL')
    if url:
        return url
    if not os.getenv('POSTGRES_HOST'):
        return 'sqlite:///./pulsemap.db'
    user = os.getenv('POSTGRES_USER', 'pulsemap')
    password = os.getenv('POSTGRES_PASSWORD', 'pulsemap')
    host = os.getenv('POSTGRES_HOST')
    port = os.getenv('POSTGRES_PORT', '5432')
    name = os.getenv('POSTGRES_DB', 'pulsemap')
    return f"postgresql+psycopg://{user}:{password}@{host}:{port}/{name}"


@dataclass
class Settings:
    database_url: str = 'sqlite:///./pulsemap.db'
    session_secret: str = 'change-this-secure-session-secret-in-production'
    session_max_age: int = 24 * 60 * 60
    admin_username: str = 'admin'
    admin_password: str = 'admin123'
    bcrypt_rounds: int = 10
    request_timeout: float = 30.0
    user_agent: str = 'pulsemap/1.0'
    caps: dict = field(default_factory=lambda: dict(DEFAULT_CAPS))
    retention_hours: dict = field(default_factory=lambda: dict(DEFAULT_RETENTION_HOURS))
    refresh_on_startup: bool = True
    poll_interval: int = 0
    sweep_interval: int = 0

    @classmethod
    def from_env(cls):
        caps = {}
        retention = {}
        for t in EventType:
            caps[t] = _env_int(f'CAP_{t.name}', DEFAULT_CAPS[t])
            retention[t] = _env_int(f'RETENTION_{t.name}_HOURS', DEFAULT_RETENTION_HOURS[t])
        return cls(
            database_url=database_url(),
            session_secret=os.getenv('SESSION_SECRET', cls.session_secret),
            session_max_age=_env_int('SESSION_MAX_AGE_SECONDS', cls.session_max_age),
            admin_username=os.getenv('ADMIN_USERNAME', cls.admin_username),
            admin_password=os.getenv('ADMIN_PASSWORD', cls.admin_password),
            bcrypt_rounds=_env_int('BCRYPT_ROUNDS', cls.bcrypt_rounds),
            request_timeout=float(_env_int('REQUEST_TIMEOUT_SECONDS', 30)),
            user_agent=os.getenv('USER_AGENT', cls.user_agent),
            caps=caps,
            retention_hours=retention,
            refresh_on_startup=env_flag('REFRESH_ON_STARTUP', '1'),
            poll_interval=_env_int('POLL_INTERVAL_SECONDS', 0),
            sweep_interval=_env_int('SWEEP_INTERVAL_SECONDS', 0),
        )

    def retention_ms(self):
        """Per-type maximum age in milliseconds, skipping types with no policy."""
        return {t: h * 60 * 60 * 1000 for t, h in self.retention_hours.items() if h is not None}


def configure_logging(level=None):
    level = level or os.getenv('LOG_LEVEL', 'INFO')
    logging.basicConfig(
        level=level.upper() if isinstance(level, str) else level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

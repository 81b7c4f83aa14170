import logging
import os
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

DEFAULT_EXCHANGE_RATES_URL = (
    "http://go-money-exchange-rates.s3-website.eu-north-1.amazonaws.com/latest.json"
)


class Settings:
    def __init__(
        self,
        database_url: str,
        base_currency: str,
        exchange_rates_url: str,
        exchange_rates_timeout_secs: float,
        api_port: int,
        jwt_private_key: str,
        jwt_key_is_temporary: bool,
        static_files_directory: Optional[str],
        timezone: str,
    ) -> None:
        self.database_url = database_url
        self.base_currency = base_currency
        self.exchange_rates_url = exchange_rates_url
        self.exchange_rates_timeout_secs = exchange_rates_timeout_secs
        self.api_port = api_port
        self.jwt_private_key = jwt_private_key
        self.jwt_key_is_temporary = jwt_key_is_temporary
        self.static_files_directory = static_files_directory
        self.timezone = timezone


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _database_url() -> str:
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        return explicit

    host = os.getenv("DB_HOST")
    if host:
        port = int(os.getenv("DB_PORT", "5432"))
        name = os.getenv("DB_DATABASE", "go_money")
        user = os.getenv("DB_USER", "postgres")
        password = os.getenv("DB_PASSWORD", "")
        credentials = f"{user}:{password}" if password else user
        return f"postgresql+psycopg2://{credentials}@{host}:{port}/{name}"

    data_dir = _ensure_data_dir()
    return f"sqlite:///{data_dir / 'ledger.db'}"


def _jwt_private_key() -> tuple[str, bool]:
    key = os.getenv("JWT_PRIVATE_KEY", "").strip()
    if key:
        return key, False
    logger.warning(
        "JWT_PRIVATE_KEY is not set, generated a temporary key. "
        "Sessions will not survive a restart."
    )
    return secrets.token_hex(32), True


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    base_currency = (
        os.getenv("CURRENCY_CONFIG_BASE_CURRENCY")
        or os.getenv("CURRENCY_CONFIG.BASE_CURRENCY")
        or "USD"
    )
    jwt_key, jwt_temporary = _jwt_private_key()
    static_dir = os.getenv("STATIC_FILES_DIRECTORY") or None
    return Settings(
        database_url=_database_url(),
        base_currency=base_currency.strip().upper(),
        exchange_rates_url=os.getenv("EXCHANGE_RATES_URL", DEFAULT_EXCHANGE_RATES_URL),
        exchange_rates_timeout_secs=float(
            os.getenv("EXCHANGE_RATES_TIMEOUT_SECS", "10")
        ),
        api_port=int(os.getenv("GRPC_PORT", "52055")),
        jwt_private_key=jwt_key,
        jwt_key_is_temporary=jwt_temporary,
        static_files_directory=static_dir,
        timezone=os.getenv("LEDGER_TIMEZONE", "UTC"),
    )

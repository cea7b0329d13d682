# ==============================================
# Configuration Management
# ==============================================
#
# PURPOSE:
#   Load and validate all configuration from environment
#   variables / .env file. Provides typed config objects
#   to all other modules.
#
# CLASSES:
# --------
# - OfficialStoreConfig (dataclass)
#     uri: str           (default "mongodb://localhost:27017")
#     database: str      (default "taskflow")
#
# - RouterConfig (dataclass)
#     cache_ttl_seconds: float  (default 5.0)
#
# - TimeoutConfig (dataclass)
#     probe_timeout_seconds: float       (default 5.0)
#     initialize_timeout_seconds: float  (default 30.0)
#
# - SecretsConfig (dataclass)
#     encryption_key: str | None  (Fernet key, required unless the
#                                  development key is allowed)
#     allow_development_key: bool (default False)
#
# - ApiConfig (dataclass)
#     host: str   (default "127.0.0.1")
#     port: int   (default 8000)
#     base_url: str (default "http://127.0.0.1:8000")
#
# - AppConfig (dataclass)
#     official, router, timeouts, secrets, api
#     default_database_name: str (default "taskflow")
#     log_level: str             (default "INFO")
#
# FUNCTIONS:
# ----------
# - get_config() -> AppConfig
#     Load .env using python-dotenv, construct AppConfig.
#     Returns the same singleton on repeated calls.
#
# - reset_config() -> None
#     Drop the singleton so the next get_config() re-reads the env.
#
# - configure_logging(level: str | None = None) -> None
#
# USAGE:
# ------
#   from taskflow.config import get_config
#   config = get_config()
#   print(config.official.uri)
#   print(config.router.cache_ttl_seconds)
#
# ==============================================

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


@dataclass
class OfficialStoreConfig:
    """The managed MongoDB every tenant can use without setup."""
    uri: str = "mongodb://localhost:27017"
    database: str = "taskflow"


@dataclass
class RouterConfig:
    """Router cache configuration."""
    cache_ttl_seconds: float = 5.0


@dataclass
class TimeoutConfig:
    """Upper bounds for the slow, network-bound operations."""
    probe_timeout_seconds: float = 5.0
    initialize_timeout_seconds: float = 30.0


@dataclass
class SecretsConfig:
    """Key material for encrypting connection strings at rest."""
    encryption_key: Optional[str] = None
    allow_development_key: bool = False


@dataclass
class ApiConfig:
    """HTTP server settings (also used by the CLI as its target)."""
    host: str = "127.0.0.1"
    port: int = 8000
    base_url: str = "http://127.0.0.1:8000"


@dataclass
class AppConfig:
    """Main application configuration."""
    official: OfficialStoreConfig = field(default_factory=OfficialStoreConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    secrets: SecretsConfig = field(default_factory=SecretsConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    default_database_name: str = "taskflow"
    log_level: str = "INFO"


# Singleton instance
_config_instance: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Load configuration from environment variables / .env file.
    Returns the same singleton instance on repeated calls.

    Returns:
        AppConfig: Application configuration
    """
    global _config_instance

    if _config_instance is not None:
        return _config_instance

    # Load .env file from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(dotenv_path=env_path)

    official_config = OfficialStoreConfig(
        uri=os.getenv("OFFICIAL_MONGODB_URI", "mongodb://localhost:27017"),
        database=os.getenv("OFFICIAL_MONGODB_DB", "taskflow"),
    )

    router_config = RouterConfig(
        cache_ttl_seconds=float(os.getenv("ROUTER_CACHE_TTL_SECONDS", "5.0"))
    )

    timeout_config = TimeoutConfig(
        probe_timeout_seconds=float(os.getenv("PROBE_TIMEOUT_SECONDS", "5.0")),
        initialize_timeout_seconds=float(os.getenv("INITIALIZE_TIMEOUT_SECONDS", "30.0")),
    )

    secrets_config = SecretsConfig(
        encryption_key=os.getenv("TASKFLOW_SECRET_KEY") or None,
        allow_development_key=os.getenv("TASKFLOW_ALLOW_DEV_SECRET_KEY", "false").lower() in ("1", "true", "yes"),
    )

    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", "8000"))
    api_config = ApiConfig(
        host=host,
        port=port,
        base_url=os.getenv("API_BASE_URL", f"http://{host}:{port}"),
    )

    _config_instance = AppConfig(
        official=official_config,
        router=router_config,
        timeouts=timeout_config,
        secrets=secrets_config,
        api=api_config,
        default_database_name=os.getenv("DEFAULT_DATABASE_NAME", "taskflow"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )

    return _config_instance


def reset_config() -> None:
    """Forget the cached configuration (tests, reloads)."""
    global _config_instance
    _config_instance = None


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=(level or get_config().log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

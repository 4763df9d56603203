# Configuration loader with environment variable support
# YAML file (config/<env>.yaml or CONFIG_PATH) for import tuning,
# environment variables for connection secrets.

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, validator
from pydantic_settings import BaseSettings

from .models import OSMGraphBaseModel

logger = logging.getLogger(__name__)

SUPPORTED_STORE_BACKENDS = {"neo4j", "memory"}
RECOMMENDED_MIN_COMMIT_INTERVAL = 100


class AppConfig(BaseModel):
    name: str = "osmgraph"
    version: str = "0.1.0"


class FilterEnvelopeConfig(BaseModel):
    """Bounding filter applied to points before they reach the builder."""

    min_lon: float
    max_lon: float
    min_lat: float
    max_lat: float

    @validator("max_lon")
    def _lon_ordered(cls, v, values):
        if "min_lon" in values and v < values["min_lon"]:
            raise ValueError(f"max_lon ({v}) must be >= min_lon ({values['min_lon']})")
        return v

    @validator("max_lat")
    def _lat_ordered(cls, v, values):
        if "min_lat" in values and v < values["min_lat"]:
            raise ValueError(f"max_lat ({v}) must be >= min_lat ({values['min_lat']})")
        return v


class ImporterConfig(BaseModel):
    """Import tuning: batching cadence, input filtering and log verbosity."""

    dataset_name: str = Field(default="osm")
    dataset_source: Optional[str] = None
    commit_interval: int = Field(default=5000)
    # Upper bound on writes of any kind (creates, links, property sets)
    # held in one open transaction; None means commit_interval alone decides.
    max_pending_operations: Optional[int] = Field(default=None)
    all_points: bool = False
    max_logged_misses: int = Field(default=10, ge=0)
    progress_log_seconds: float = Field(default=1.432, gt=0)
    filter_envelope: Optional[FilterEnvelopeConfig] = None

    @validator("commit_interval")
    def validate_commit_interval(cls, v):
        if v < 1:
            raise ValueError("commit_interval must be >= 1")
        if v < RECOMMENDED_MIN_COMMIT_INTERVAL:
            logger.warning(
                "commit_interval=%s is unusually short, expect bad insert performance",
                v,
            )
        return v

    @validator("max_pending_operations")
    def validate_max_pending(cls, v):
        if v is not None and v < 1:
            raise ValueError("max_pending_operations must be >= 1 when set")
        return v

    @validator("dataset_name")
    def validate_dataset_name(cls, v):
        if not v or not v.strip():
            raise ValueError("dataset_name cannot be empty")
        return v.strip()


class StoreConfig(BaseModel):
    backend: str = Field(default="neo4j")
    database: Optional[str] = None

    @validator("backend")
    def validate_backend(cls, v):
        if v not in SUPPORTED_STORE_BACKENDS:
            raise ValueError(
                f"backend must be one of {sorted(SUPPORTED_STORE_BACKENDS)}, got {v}"
            )
        return v


class Config(OSMGraphBaseModel):
    """Main configuration model"""

    app: AppConfig = Field(default_factory=AppConfig)
    importer: ImporterConfig = Field(default_factory=ImporterConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


class Settings(BaseSettings):
    """Environment-based settings"""

    # Environment
    env: str = Field(default="development", alias="ENV")
    config_path: Optional[str] = Field(default=None, alias="CONFIG_PATH")

    # Neo4j
    neo4j_uri: str = Field(default="bolt://localhost:7687", alias="NEO4J_URI")
    neo4j_user: str = Field(default="neo4j", alias="NEO4J_USER")
    neo4j_password: Optional[str] = Field(default=None, alias="NEO4J_PASSWORD")
    neo4j_database: Optional[str] = Field(default=None, alias="NEO4J_DATABASE")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables


def load_config() -> tuple[Config, Settings]:
    """
    Load configuration from YAML file and environment variables.

    Returns:
        tuple: (Config, Settings) - YAML config and environment settings

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    settings = Settings()

    if settings.config_path:
        config_path = Path(settings.config_path)
    else:
        config_path = Path(__file__).parent.parent.parent / "config" / f"{settings.env}.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from: {config_path}")

    with open(config_path, "r") as f:
        config_dict = yaml.safe_load(f) or {}

    config = Config(**config_dict)

    # NEO4J_DATABASE wins over the YAML default so one config file can serve
    # several databases.
    if settings.neo4j_database:
        config.store.database = settings.neo4j_database

    return config, settings


# Global config instances (loaded once at startup)
_config: Optional[Config] = None
_settings: Optional[Settings] = None


def get_config() -> Config:
    """Get the global Config instance"""
    global _config
    if _config is None:
        _config, _ = load_config()
    return _config


def get_settings() -> Settings:
    """Get the global Settings instance"""
    global _settings
    if _settings is None:
        _, _settings = load_config()
    return _settings


def init_config() -> tuple[Config, Settings]:
    """Initialize and cache global config instances"""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings

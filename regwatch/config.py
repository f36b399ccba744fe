"""
Configuration loading: YAML file, .env and environment overrides.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .models import DEFAULT_MODULE_TYPE, PENDING_TTL_DAYS, ParamField

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "regwatch.yml"


class DatabaseConfig(BaseModel):
    path: str = "data/regwatch.db"


class SchedulerConfig(BaseModel):
    timezone: str = "UTC"
    sync_seconds: int = 30


class CrawlerConfig(BaseModel):
    name: str
    source: str
    enabled: bool = True
    country_code: Optional[str] = None
    crawler_type: Optional[str] = None
    description: str = ""
    common_fields: bool = True
    fields: List[ParamField] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)


class PresetConfig(BaseModel):
    name: str
    crawler: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    description: str = ""
    cron: Optional[str] = None


class ClassifierConfig(BaseModel):
    api_key: Optional[str] = None
    base_url: str = "https://api.openai.com/v1"
    model: str = ""
    topic: Optional[str] = None
    temperature: float = 0.1
    max_retries: int = 3
    timeout: float = 60.0


class JudgingConfig(BaseModel):
    module_type: str = DEFAULT_MODULE_TYPE
    batch_size: int = 50
    batch_pause: float = 0.0
    max_concurrency: int = 4
    call_interval: float = 0.0
    pending_ttl_days: int = PENDING_TTL_DAYS
    cleanup_cron: str = "0 2 * * *"


class AppConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    crawlers: List[CrawlerConfig] = Field(default_factory=list)
    presets: List[PresetConfig] = Field(default_factory=list)
    blacklist: List[str] = Field(default_factory=list)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    judging: JudgingConfig = Field(default_factory=JudgingConfig)
    repository: Optional[str] = None


def _apply_env(cfg: AppConfig) -> AppConfig:
    """Environment variables win over the YAML file."""
    if os.getenv("REGWATCH_DB"):
        cfg.database.path = os.environ["REGWATCH_DB"]
    if os.getenv("SCHEDULER_TIMEZONE"):
        cfg.scheduler.timezone = os.environ["SCHEDULER_TIMEZONE"]
    if os.getenv("CLASSIFIER_API_KEY"):
        cfg.classifier.api_key = os.environ["CLASSIFIER_API_KEY"]
    if os.getenv("CLASSIFIER_BASE_URL"):
        cfg.classifier.base_url = os.environ["CLASSIFIER_BASE_URL"]
    if os.getenv("CLASSIFIER_MODEL"):
        cfg.classifier.model = os.environ["CLASSIFIER_MODEL"]
    return cfg


def load_config(path: Optional[str] = None, env_file: Optional[str] = None) -> AppConfig:
    """Load configuration from YAML, falling back to defaults if the file is missing."""
    load_dotenv(env_file)

    config_path = Path(path or os.getenv("REGWATCH_CONFIG", DEFAULT_CONFIG_PATH))
    data: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        logger.info(f"Loaded configuration from {config_path}")
    else:
        logger.warning(f"Config file {config_path} not found, using defaults")

    return _apply_env(AppConfig.model_validate(data))

# File: parkflow/infrastructure/config.py
"""
Configuration for the Parking Session Engine

Settings come from three layers, later layers winning:
1. Defaults declared on the Settings model
2. An optional YAML file (the `settings` section of the document)
3. Environment variables prefixed with PARKFLOW_

The same YAML document may carry a `seed` section with rate plans,
discount rules, memberships and barrier bindings.
"""

from typing import Any, Dict, Optional
import logging
import os

import yaml
from pydantic import BaseModel, ConfigDict, Field

from ..application.dtos import SeedDataDTO

ENV_PREFIX = "PARKFLOW_"

logger = logging.getLogger(__name__)


class Settings(BaseModel):
    """Runtime settings of an engine instance"""

    model_config = ConfigDict(extra='ignore')

    database_url: str = Field(default="sqlite:///./parkflow.db", description="SQLAlchemy URL or 'memory'")
    broker_type: str = Field(default="memory", pattern="^(memory|redis|rabbitmq)$")
    redis_url: Optional[str] = None
    amqp_url: Optional[str] = None
    mongo_url: Optional[str] = Field(default=None, description="Audit event store; in-memory when unset")
    lock_backend: str = Field(default="memory", pattern="^(memory|redis)$")
    lock_timeout_seconds: float = Field(default=10.0, gt=0)
    timezone: str = "Asia/Seoul"
    events_topic: str = "parkflow.events"
    barrier_topic: str = "parkflow.barrier"
    close_on_payment_at_exit: bool = True
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, base: Optional[Dict[str, Any]] = None, environ: Optional[Dict[str, str]] = None) -> 'Settings':
        """Build settings from PARKFLOW_* variables layered over `base`"""
        environ = os.environ if environ is None else environ
        values = dict(base or {})
        for name in cls.model_fields:
            env_value = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if env_value is not None:
                values[name] = env_value
        return cls.model_validate(values)


def read_yaml(path: str) -> Dict[str, Any]:
    with open(path, 'r', encoding='utf-8') as f:
        document = yaml.safe_load(f) or {}
    if not isinstance(document, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")
    return document


def load_settings(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Settings:
    """Load settings from an optional YAML file plus the environment"""
    base: Dict[str, Any] = {}
    if path:
        base = read_yaml(path).get('settings') or {}
        logger.debug(f"Loaded settings from {path}")
    return Settings.from_env(base, environ)


def load_seed_data(path: str) -> SeedDataDTO:
    """
    Load reference data from YAML. The file may hold the seed at its top
    level or under a `seed` key.
    """
    document = read_yaml(path)
    seed = document.get('seed', document)
    return SeedDataDTO.model_validate(seed)

from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_INVENTORY_TOPIC,
    DEFAULT_ORDER_NUMBER_PREFIX,
    DEFAULT_ORDER_NUMBER_WIDTH,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Settings for order numbering and emitted events."""

    order_number_prefix: str = DEFAULT_ORDER_NUMBER_PREFIX
    order_number_width: int = DEFAULT_ORDER_NUMBER_WIDTH
    inventory_topic: str = DEFAULT_INVENTORY_TOPIC

    def format_order_number(self, sequence: int) -> str:
        return f"{self.order_number_prefix}{sequence:0{self.order_number_width}d}"


class KarigarConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    database_url: Optional[str] = None
    workflow_path: Optional[str] = None


def load_config(path: Optional[str] = None) -> KarigarConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to KARIGAR_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("KARIGAR_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = KarigarConfig(**data)
    else:
        config = KarigarConfig()

    env_db_url = os.getenv("KARIGAR_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config

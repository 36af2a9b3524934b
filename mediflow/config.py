from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class BatchConfig(BaseModel):
    """Bulk booking policy."""

    max_items: int = Field(default=10, ge=1)
    max_workers: int = Field(default=4, ge=1)
    item_timeout: float = Field(default=10.0, gt=0)
    process_on_submit: bool = True
    batch_number_prefix: str = "BULK"


class AppointmentServiceConfig(BaseModel):
    """Where and how batch items are turned into appointments."""

    base_url: Optional[str] = None
    timeout: float = 10.0
    commission_rate: float = 0.10


class CustomerRecord(BaseModel):
    agent_id: str
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None


class IdentityConfig(BaseModel):
    """Caller resolution and the ownership directory."""

    secret: Optional[str] = None
    algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"
    jwks_url: Optional[str] = None
    audience: str = ""
    issuer: str = ""
    leeway: int = 30
    override_permission: str = "approvals:override"
    agents: List[str] = Field(default_factory=list)
    customers: Dict[str, CustomerRecord] = Field(default_factory=dict)


class MediflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    batch: BatchConfig = BatchConfig()
    appointments: AppointmentServiceConfig = AppointmentServiceConfig()
    identity: IdentityConfig = IdentityConfig()


def load_config(path: Optional[str] = None) -> MediflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to MEDIFLOW_CONFIG env
            variable or 'mediflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("MEDIFLOW_CONFIG", "mediflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = MediflowConfig(**data)
    else:
        config = MediflowConfig()

    env_db_url = os.getenv("MEDIFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_secret = os.getenv("MEDIFLOW_JWT_SECRET")
    if env_secret:
        config.identity.secret = env_secret
    return config

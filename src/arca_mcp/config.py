"""Runtime configuration and authority environments."""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple

from pydantic_settings import BaseSettings, SettingsConfigDict


class Endpoints(NamedTuple):
    wsaa: str
    wsfe: str


class Environment(str, Enum):
    """Authority environment. Certificates and tokens never cross environments."""

    TESTING = "testing"
    PRODUCTION = "production"

    @property
    def endpoints(self) -> Endpoints:
        return ENDPOINTS[self]


ENDPOINTS = {
    # Homologación
    Environment.TESTING: Endpoints(
        wsaa="https://wsaahomo.afip.gov.ar/ws/services/LoginCms",
        wsfe="https://wswhomo.afip.gov.ar/wsfev1/service.asmx",
    ),
    Environment.PRODUCTION: Endpoints(
        wsaa="https://wsaa.afip.gov.ar/ws/services/LoginCms",
        wsfe="https://servicios1.afip.gov.ar/wsfev1/service.asmx",
    ),
}


class Settings(BaseSettings):
    """Settings read from ``ARCA_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="ARCA_", env_file=".env", extra="ignore")

    environment: Environment = Environment.TESTING
    request_timeout_seconds: float = 30.0
    # Path of the JSON store; empty keeps everything in memory
    store_path: str = ""
    log_level: str = "INFO"

    default_token_ttl_hours: int = 12
    wsfe_service: str = "wsfe"

    # Reconciliation sweep
    sync_max_invoices: int = 20
    sync_delay_seconds: float = 0.5


def get_settings() -> Settings:
    return Settings()

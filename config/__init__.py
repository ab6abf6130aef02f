# 📦 config/__init__.py
# ─────────────────────────────
# Runtime settings for OpenFielder

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

config_path = Path(__file__).resolve().parent / "geocoder.yml"
with open(config_path, "r") as f:
    GEOCODER_DEFAULTS = yaml.safe_load(f)

_retry = GEOCODER_DEFAULTS.get("retry", {})


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "OpenFielder Pairing"
    version: str = "1.2.0"
    host: str = "0.0.0.0"
    port: int = 8000
    prometheus_port: int = 0

    # ─────────────────────────────
    # Entity store
    store_backend: str = "memory"
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    therapists_table: str = "therapists"
    clients_table: str = "clients"

    # ─────────────────────────────
    # Geocoding
    maps_client_id: str = Field("", validation_alias=AliasChoices("AZURE_MAPS_CLIENT_ID", "MAPS_CLIENT_ID"))
    maps_token: Optional[str] = Field(None, validation_alias=AliasChoices("AZURE_MAPS_TOKEN", "MAPS_TOKEN"))
    geocode_endpoint: str = GEOCODER_DEFAULTS.get("endpoint", "https://atlas.microsoft.com/geocode")
    geocode_api_version: str = GEOCODER_DEFAULTS.get("api_version", "2025-01-01")
    geocode_country: str = GEOCODER_DEFAULTS.get("country", "US")
    geocode_scopes: List[str] = GEOCODER_DEFAULTS.get("scopes", [])
    geocode_timeout_s: float = GEOCODER_DEFAULTS.get("timeout_s", 8.0)
    geocode_max_retries: int = _retry.get("max_retries", 3)
    geocode_base_delay_ms: int = _retry.get("base_delay_ms", 1000)
    geocode_jitter_ms: int = _retry.get("jitter_ms", 1000)
    geocode_fallback_to_mock: bool = False
    geocode_on_create: bool = True

    # ─────────────────────────────
    # Pairing
    default_nearest_limit: int = 10
    max_nearest_limit: int = 100


@lru_cache
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings", "GEOCODER_DEFAULTS"]

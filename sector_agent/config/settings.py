import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import List, Optional

PACKAGE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
DEFAULT_ZONES_FILE = os.path.join(PACKAGE_DIR, 'data', 'zones.json')


class Settings(BaseSettings):
    """
    Pydantic settings for the sector agent.
    Values are automatically read from environment variables or a .env file,
    matching the upper-cased field name (e.g. OPENCAGE_API_KEY).
    """
    log_level: str = Field(default="INFO")

    # API settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8003)

    # Database connection URL (document store + geocode cache)
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sector_agent.db")

    @field_validator('database_url')
    @classmethod
    def fix_database_url_scheme(cls, v: Optional[str]) -> Optional[str]:
        """Corrects the database scheme for SQLAlchemy asyncpg, preserving any query parameters."""
        if not v:
            return v
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql+asyncpg://", 1)
        if v.startswith("postgresql://") and "+asyncpg" not in v:
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    # Geocoding provider settings
    geocoding_provider: str = Field(default="opencage", description="'opencage' or 'nominatim'")
    opencage_api_key: Optional[str] = Field(default=None)
    geocoding_user_agent: str = Field(default="sector-agent/1.0")
    geocoding_language: str = Field(default="fr")
    geocoding_country: str = Field(default="fr")
    geocoding_timeout_seconds: float = Field(default=10.0, gt=0)
    geocoding_max_concurrency: int = Field(default=1, ge=1, description="1 keeps resolution sequential.")
    geocoding_min_interval_seconds: float = Field(default=0.0, ge=0)
    geocoding_memo_size: int = Field(default=1024, ge=0, description="Outcomes kept in memory until their cache row is written.")

    # Sector zones
    zones_file: str = Field(default=DEFAULT_ZONES_FILE)

    # Collections and workflow statuses
    ticket_collections: List[str] = Field(default=["CHR", "HACCP", "Kezia", "Tabac"])
    shipment_collection: str = Field(default="envois")
    default_status: str = Field(default="en cours")
    rma_status: str = Field(default="Demande de RMA")
    rma_marker: str = Field(default="demande de rma")

    snapshot_poll_interval_seconds: float = Field(default=5.0, gt=0)
    watch_collections: bool = Field(default=True, description="Run the pipeline continuously on every ticket collection.")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra='ignore'
    )


settings = Settings()

"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to a .env file
  - Validate the CUIT, sales point and key material paths at startup

Only AppSettings is a BaseSettings instance. Sub-settings are plain BaseModel
classes populated through env_nested_delimiter="__", so TAXPAYER__CUIT maps
to taxpayer.cuit, CERTIFICATES__PRIVATE_KEY_PATH to
certificates.private_key_path, and so on.

Endpoint defaults are the AFIP production services; point WSAA__URL,
WSFE__URL and REGISTRY__URL at the homologation hosts for testing.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class TaxpayerSettings(BaseModel):
    """The single taxpayer on whose behalf invoices are issued."""

    cuit: str = Field(description="Issuer CUIT, 11 digits (dashes allowed)")
    sales_point: int = Field(ge=1, le=99998, description="Registered point of sale")

    @field_validator("cuit")
    @classmethod
    def normalize_cuit(cls, value: str) -> str:
        """Strip dashes and spaces; reject anything but 11 digits."""
        digits = value.replace("-", "").replace(" ", "").strip()
        if len(digits) != 11 or not digits.isdigit():
            raise ValueError(f"CUIT must have 11 digits, got {value!r}")
        return digits


class CertificateSettings(BaseModel):
    """PEM key material used to sign WSAA login tickets."""

    private_key_path: Path = Field(description="PEM private key (unencrypted)")
    certificate_path: Path = Field(description="PEM certificate issued by AFIP")


class WsaaSettings(BaseModel):
    """Authentication service (WSAA) configuration."""

    url: str = Field(default="https://wsaa.afip.gov.ar/ws/services/LoginCms")
    invoicing_service: str = Field(default="wsfe")
    registry_service: str = Field(default="ws_sr_constancia_inscripcion")


class WsfeSettings(BaseModel):
    """Electronic invoicing service (WSFEv1) configuration."""

    url: str = Field(default="https://servicios1.afip.gov.ar/wsfev1/service.asmx")


class RegistrySettings(BaseModel):
    """Taxpayer registry (padrón A5) configuration."""

    url: str = Field(default="https://aws.afip.gov.ar/sr-padron/webservices/personaServiceA5")


class CacheSettings(BaseModel):
    """Credential cache validity window and sweep cadence."""

    validity_minutes: int = Field(default=11, ge=1)
    sweep_interval_seconds: int = Field(default=60, ge=1)


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    taxpayer: TaxpayerSettings
    certificates: CertificateSettings
    wsaa: WsaaSettings = Field(default_factory=lambda: WsaaSettings())
    wsfe: WsfeSettings = Field(default_factory=lambda: WsfeSettings())
    registry: RegistrySettings = Field(default_factory=lambda: RegistrySettings())
    cache: CacheSettings = Field(default_factory=lambda: CacheSettings())

    http_timeout_seconds: float = Field(default=30.0, gt=0)
    serialize_numbering: bool = Field(default=True)
    log_level: str = Field(default="INFO")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5001, ge=1, le=65535)

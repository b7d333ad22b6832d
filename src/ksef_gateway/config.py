"""
Gateway configuration.

GatewayConfig is the immutable per-business-profile view used by the client
and the encoder. GatewaySettings loads it from environment variables
(prefix ``KSEF_``) or a local ``.env`` file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

Environment = Literal["test", "demo", "prod"]
SchemaVersion = Literal["FA(2)", "FA(3)"]

KSEF_URLS: dict[str, str] = {
    "test": "https://api-test.ksef.mf.gov.pl/v2",
    "demo": "https://api-demo.ksef.mf.gov.pl/v2",
    "prod": "https://api.ksef.mf.gov.pl/v2",
}

QR_BASE_URLS: dict[str, str] = {
    "test": "https://qr-test.ksef.mf.gov.pl",
    "demo": "https://qr-demo.ksef.mf.gov.pl",
    "prod": "https://qr.ksef.mf.gov.pl",
}


class GatewayConfig(BaseModel):
    """Connection and schema settings for one business profile."""

    model_config = ConfigDict(frozen=True)

    environment: Environment = "test"
    base_url: str = ""
    schema_version: SchemaVersion = "FA(3)"
    system_info: str = "ksef-gateway"
    timeout: Optional[float] = Field(
        default=30.0, description="Per-request HTTP timeout in seconds; None disables"
    )

    @model_validator(mode="before")
    @classmethod
    def _default_base_url(cls, data: object) -> object:
        if isinstance(data, dict) and not data.get("base_url"):
            environment = data.get("environment", "test")
            if environment in KSEF_URLS:
                data = {**data, "base_url": KSEF_URLS[environment]}
        return data


class GatewaySettings(BaseSettings):
    """
    Settings loaded from the environment.

    All settings map to ``KSEF_<NAME>`` environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="KSEF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Environment = Field(default="test", description="KSeF environment")
    base_url: Optional[str] = Field(
        default=None, description="Override for the environment's API base URL"
    )
    schema_version: SchemaVersion = "FA(3)"
    system_info: str = "ksef-gateway"
    timeout: Optional[float] = 30.0

    access_token: Optional[str] = Field(
        default=None, description="Bearer token for tool-surface calls"
    )
    public_key_pem: Optional[str] = Field(
        default=None, description="RSA public key (PEM) for symmetric key encryption"
    )
    public_key_path: Optional[Path] = Field(
        default=None, description="File holding the RSA public key (PEM)"
    )

    export_poll_interval: float = Field(default=5.0, gt=0)
    export_max_polls: int = Field(default=60, ge=1)

    def to_gateway_config(self) -> GatewayConfig:
        return GatewayConfig(
            environment=self.environment,
            base_url=self.base_url or "",
            schema_version=self.schema_version,
            system_info=self.system_info,
            timeout=self.timeout,
        )

    def load_public_key(self) -> str:
        """
        Return the configured public key PEM.

        Raises:
            ValueError: neither KSEF_PUBLIC_KEY_PEM nor KSEF_PUBLIC_KEY_PATH is set
        """
        if self.public_key_pem:
            return self.public_key_pem
        if self.public_key_path:
            return self.public_key_path.read_text(encoding="ascii")
        raise ValueError(
            f"No KSeF public key configured for environment '{self.environment}'"
        )

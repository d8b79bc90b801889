"""Configuration models for dwr-client.

All models use Pydantic v2. See DESIGN.md "Configuration" for the file format.
"""

from __future__ import annotations

from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _scalar_to_str(value: Any) -> Any:
    """Render YAML scalars as DWR text. Non-scalars are left for validation to reject."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return value


class ClientConfig(BaseModel):
    """Connection settings for one DWR endpoint."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = Field(description="Base URL of the web application, e.g. https://host/app")
    base_params: dict[str, str] = Field(
        default_factory=dict,
        description="Parameters sent with every call (callCount, windowName, ...)",
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Static headers (supports ${ENV_VAR} substitution)",
    )
    timeout: float = Field(default=30.0, description="Transport timeout in seconds")
    verify_ssl: bool = Field(default=True, description="Verify the server certificate")
    ca_bundle: str | None = Field(default=None, description="Path to a CA bundle")
    cert: str | None = Field(default=None, description="Path to a client certificate (mTLS)")
    key: str | None = Field(default=None, description="Path to the client certificate key")

    @field_validator("base_params", mode="before")
    @classmethod
    def stringify_base_params(cls, v: Any) -> Any:
        # YAML turns `callCount: 1` into an int; the wire format is text only.
        if isinstance(v, dict):
            return {k: _scalar_to_str(val) for k, val in v.items()}
        return v

    @field_validator("timeout")
    @classmethod
    def check_timeout_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"timeout must be positive, got {value}")
        return value

    @model_validator(mode="after")
    def check_key_requires_cert(self) -> Self:
        if self.key is not None and self.cert is None:
            raise ValueError("key requires cert")
        return self


class RuntimeConfig(BaseModel):
    """Top-level configuration file structure."""

    model_config = ConfigDict(extra="forbid")

    targets: dict[str, ClientConfig] = Field(description="Target name -> client config mapping")

    @field_validator("targets")
    @classmethod
    def check_targets_not_empty(cls, value: dict[str, ClientConfig]) -> dict[str, ClientConfig]:
        if not value:
            raise ValueError("at least one target is required")
        return value

"""
Engine settings

Defaults for the provisioning engine, overridable from the environment.
"""

import os
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_PERSISTENT_KEEPALIVE = 25
DEFAULT_MAX_POOL_SIZE = 65536

_TRUTHY = {"1", "true", "yes", "on"}


class EngineSettings(BaseModel):
    """Tunables for key, pool, rendering and QR behaviour"""
    model_config = ConfigDict(extra='forbid', frozen=True)

    persistent_keepalive: int = Field(
        DEFAULT_PERSISTENT_KEEPALIVE,
        ge=0,
        le=3600,
        description="Keepalive interval written into client documents (0 omits it)"
    )
    reuse_released_addresses: bool = Field(
        True,
        description="Hand out the lowest free address; False switches to next-fit"
    )
    qr_error_correction: Literal["L", "M", "Q", "H"] = Field(
        "M",
        description="QR error correction level for client artifacts"
    )
    qr_box_size: int = Field(10, ge=1, le=100)
    qr_border: int = Field(4, ge=0, le=32)
    max_pool_size: int = Field(
        DEFAULT_MAX_POOL_SIZE,
        ge=4,
        description="Largest range (in addresses) a bitmap pool will track"
    )

    @classmethod
    def from_env(cls, prefix: str = "WGPROV_") -> "EngineSettings":
        """
        Build settings from environment variables

        Unset variables fall back to the field defaults.

        Args:
            prefix: Environment variable prefix

        Returns:
            EngineSettings instance
        """
        values = {}

        keepalive = os.getenv(f"{prefix}PERSISTENT_KEEPALIVE")
        if keepalive is not None:
            values["persistent_keepalive"] = int(keepalive)

        reuse = os.getenv(f"{prefix}REUSE_RELEASED_ADDRESSES")
        if reuse is not None:
            values["reuse_released_addresses"] = reuse.strip().lower() in _TRUTHY

        level = os.getenv(f"{prefix}QR_ERROR_CORRECTION")
        if level is not None:
            values["qr_error_correction"] = level.strip().upper()

        for field_name, env_name in (
            ("qr_box_size", "QR_BOX_SIZE"),
            ("qr_border", "QR_BORDER"),
            ("max_pool_size", "MAX_POOL_SIZE"),
        ):
            raw: Optional[str] = os.getenv(f"{prefix}{env_name}")
            if raw is not None:
                values[field_name] = int(raw)

        return cls(**values)

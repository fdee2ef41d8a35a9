"""Runtime configuration read from environment variables."""

from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from .core.clients.http import DEFAULT_TIMEOUT_SECONDS
from .core.models import Environment


class Settings(BaseModel):
    environment: Environment = Environment.PRODUCTION
    edge_functions_url: str = ""
    edge_functions_key: str = ""
    ebay_client_id: str = ""
    ebay_client_secret: str = ""
    stockx_client_id: str = ""
    stockx_client_secret: str = ""
    stockx_redirect_uri: str = ""
    data_dir: Optional[str] = None
    request_timeout_seconds: float = Field(DEFAULT_TIMEOUT_SECONDS, gt=0)
    starting_credits: int = Field(0, ge=0)


_ENV_VARS = {
    "environment": "RESALE_ENVIRONMENT",
    "edge_functions_url": "EDGE_FUNCTIONS_URL",
    "edge_functions_key": "EDGE_FUNCTIONS_KEY",
    "ebay_client_id": "EBAY_CLIENT_ID",
    "ebay_client_secret": "EBAY_CLIENT_SECRET",
    "stockx_client_id": "STOCKX_CLIENT_ID",
    "stockx_client_secret": "STOCKX_CLIENT_SECRET",
    "stockx_redirect_uri": "STOCKX_REDIRECT_URI",
    "data_dir": "DATA_DIR",
    "request_timeout_seconds": "REQUEST_TIMEOUT_SECONDS",
    "starting_credits": "STARTING_CREDITS",
}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the environment. Unset or blank variables keep their defaults."""
    environ = os.environ if environ is None else environ
    values = {}
    for field_name, var in _ENV_VARS.items():
        raw = environ.get(var, "").strip()
        if raw:
            values[field_name] = raw.lower() if field_name == "environment" else raw
    return Settings.model_validate(values)

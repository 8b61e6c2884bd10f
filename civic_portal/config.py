"""Portal Configuration - environment-driven settings

Self-Explanatory: Reads FORTANIX_* and DB_PATH once at startup.
Why: The encryption layer has two mutually exclusive auth schemes and an
explicit "no encryption" mode; a half-configured HSM must fail loudly.
How: Pydantic model + ``from_env()`` factory (returns None when no
encryption variables are set at all).
"""

import os
from enum import Enum
from typing import Dict, Optional

import structlog
from pydantic import BaseModel, Field, model_validator

from civic_portal.security.demo_mode import is_placeholder_api_key
from civic_portal.security.errors import ConfigurationError

logger = structlog.get_logger()

# Defaults
DEFAULT_DSM_ENDPOINT = "https://amer.smartkey.io"
DEFAULT_APP_DSM_ENDPOINT = "https://apps.amer.smartkey.io"
DEFAULT_CERT_PATH = "/opt/fortanix/enclave-os/default_cert/app_public.pem"
DEFAULT_KEY_PATH = "/opt/fortanix/enclave-os/default_cert/app_private.pem"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_DB_PATH = "data/citizen_services.db"

# Presence of any of these means the operator asked for encryption
ENCRYPTION_ENV_VARS = ("FORTANIX_API_KEY", "FORTANIX_APP_ID", "FORTANIX_KEY_ID")


class AuthMethod(str, Enum):
    API_KEY = "api_key"
    TRUSTED_CA = "trusted_ca"


class HsmSettings(BaseModel):
    """Validated HSM client settings"""

    auth_method: AuthMethod = AuthMethod.API_KEY
    endpoint: str
    api_key: Optional[str] = None
    app_id: Optional[str] = None
    key_id: Optional[str] = None
    cert_path: str = DEFAULT_CERT_PATH
    key_path: str = DEFAULT_KEY_PATH
    timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)

    @model_validator(mode="after")
    def check_credentials(self) -> "HsmSettings":
        if self.auth_method == AuthMethod.TRUSTED_CA:
            missing = [
                name for name, value in (
                    ("FORTANIX_APP_ID", self.app_id),
                    ("FORTANIX_KEY_ID", self.key_id),
                ) if not value
            ]
            if missing:
                raise ValueError(
                    f"trusted_ca authentication requires {', '.join(missing)}"
                )
        elif not is_placeholder_api_key(self.api_key) and not self.key_id:
            raise ValueError("api_key authentication requires FORTANIX_KEY_ID")
        return self

    @property
    def demo_mode(self) -> bool:
        return self.auth_method == AuthMethod.API_KEY and is_placeholder_api_key(self.api_key)

    @property
    def base_url(self) -> str:
        return self.endpoint.rstrip("/")

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> Optional["HsmSettings"]:
        """Build settings from the process environment

        Returns:
            HsmSettings, or None when encryption is not configured at all

        Raises:
            ConfigurationError: unknown auth method or partial configuration
        """
        env = os.environ if environ is None else environ

        if not any(env.get(name) for name in ENCRYPTION_ENV_VARS):
            logger.warning(
                "Fortanix DSM not configured - running without encryption",
                hint="Set " + ", ".join(ENCRYPTION_ENV_VARS),
            )
            return None

        raw_method = env.get("FORTANIX_AUTH_METHOD", AuthMethod.API_KEY.value)
        try:
            method = AuthMethod(raw_method)
        except ValueError as e:
            raise ConfigurationError(
                f"FORTANIX_AUTH_METHOD must be 'api_key' or 'trusted_ca', got {raw_method!r}"
            ) from e

        # The two auth methods talk to structurally different hosts
        if method == AuthMethod.TRUSTED_CA:
            endpoint = env.get("APP_FORTANIX_DSM_ENDPOINT") or DEFAULT_APP_DSM_ENDPOINT
        else:
            endpoint = env.get("FORTANIX_DSM_ENDPOINT") or DEFAULT_DSM_ENDPOINT

        try:
            return cls(
                auth_method=method,
                endpoint=endpoint,
                api_key=env.get("FORTANIX_API_KEY") or None,
                app_id=env.get("FORTANIX_APP_ID") or None,
                key_id=env.get("FORTANIX_KEY_ID") or None,
                timeout_seconds=float(
                    env.get("FORTANIX_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
                ),
            )
        except ValueError as e:
            # pydantic.ValidationError is a ValueError
            raise ConfigurationError(str(e)) from e


def get_db_path(environ: Optional[Dict[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    return env.get("DB_PATH", DEFAULT_DB_PATH)

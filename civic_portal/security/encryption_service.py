"""Encryption Service - startup wiring for the field encryption layer

Self-Explanatory: Builds settings -> HsmClient -> FieldCodec once per process.
Why: One session per process, handed to whoever needs it (no module globals).
How: ``EncryptionService.from_env()`` at startup; ``initialize()`` runs the
HSM self-test. A configured HSM is never swapped for plaintext storage:
after a failed startup, writes keep going to the HSM (and fail with
EncryptionFailed) until it answers again.
"""

from typing import Dict, Optional

import httpx
import structlog

from civic_portal.config import HsmSettings
from civic_portal.security.errors import (
    AuthenticationFailed,
    DecryptionFailed,
    EncryptionFailed,
)
from civic_portal.security.field_codec import FieldCodec
from civic_portal.security.hsm_client import HsmClient

logger = structlog.get_logger()


class EncryptionService:
    """Owns the HSM client (if any) and the field codec built on it"""

    def __init__(self, settings: Optional[HsmSettings],
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.hsm_client = HsmClient(settings, transport=transport) if settings else None
        self.codec = FieldCodec(self.hsm_client)
        # Set while the startup self-test has not passed yet
        self.startup_error: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> "EncryptionService":
        """Raises ConfigurationError on partial/contradictory configuration"""
        return cls(HsmSettings.from_env(environ), transport=transport)

    @property
    def enabled(self) -> bool:
        return self.codec.encryption_enabled

    async def initialize(self) -> bool:
        """Authenticate + self-test. Returns whether encryption is active.

        AuthenticationFailed and self-test failures are logged and recorded;
        the client is kept, so sensitive writes fail instead of being stored
        in the clear. ConfigurationError propagates: a broken setup must stop
        startup.
        """
        if self.hsm_client is None:
            logger.warning("Fortanix DSM not configured - running without encryption")
            return False

        try:
            await self.hsm_client.initialize()
        except (AuthenticationFailed, EncryptionFailed, DecryptionFailed) as e:
            logger.error(
                "Fortanix DSM initialization failed - sensitive writes will be rejected",
                error=str(e),
            )
            self.startup_error = str(e)
            return False

        self.startup_error = None
        logger.info("Application-level encryption ready", mode=self.hsm_client.mode)
        return True

    async def health_check(self) -> Dict:
        """HSM status; re-runs the self-test while startup has not passed"""
        if self.hsm_client is None:
            return {"status": "disabled", "message": "Encryption not configured"}
        if self.startup_error is not None and not await self.initialize():
            return {
                "status": "unhealthy",
                "error": self.startup_error,
                "endpoint": self.hsm_client.settings.base_url,
            }
        return await self.hsm_client.health_check()

    def get_encryption_config(self) -> Dict:
        return {**self.codec.describe(), "startup_error": self.startup_error}

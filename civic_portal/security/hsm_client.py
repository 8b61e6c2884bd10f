"""Fortanix DSM Client - remote HSM encrypt/decrypt with session caching

Self-Explanatory: Owns one authenticated session to the Fortanix DSM and
exposes ``encrypt(plaintext) -> envelope text`` / ``decrypt(text) -> plaintext``.
Why: Key material never leaves the HSM; the portal only ever sees ciphertext.
How: REST over HTTPS with httpx. Bearer token from /sys/v1/session/auth,
refreshed 60s before expiry under an asyncio.Lock.

Auth Methods (fixed at construction):
- api_key: ``Authorization: Basic <FORTANIX_API_KEY>`` on the auth exchange.
  Placeholder keys switch the client into demo mode (no network at all).
- trusted_ca: mTLS with the enclave certificate pair + Basic auth with
  FORTANIX_APP_ID and an empty password. The client certificate is the
  trust anchor, so the server chain is not verified. Crypto calls carry
  both the bearer token and the client certificate.

Flow:
1. ensure_authenticated() -> reuse token or re-run the auth exchange
2. POST /crypto/v1/encrypt {key: {kid}, alg: AES, mode: CBC, plain: b64}
3. Store {"cipher", "iv"} as JSON text (see envelope.py)
4. POST /crypto/v1/decrypt with the same pair -> base64 plain -> UTF-8
"""

import asyncio
import base64
import os
import ssl
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

import httpx
import structlog
from cryptography import x509

from civic_portal.config import AuthMethod, HsmSettings
from civic_portal.security.demo_mode import (
    DEMO_TOKEN,
    DEMO_TOKEN_TTL_SECONDS,
    demo_decrypt,
    demo_encrypt,
)
from civic_portal.security.envelope import Envelope, parse_envelope
from civic_portal.security.errors import (
    AuthenticationFailed,
    ConfigurationError,
    DecryptionFailed,
    EncryptionFailed,
    EncryptionLayerError,
)
from civic_portal.utils.metrics import (
    record_hsm_auth,
    record_hsm_operation,
    track_hsm_request,
)

logger = structlog.get_logger()

# Re-authenticate this many seconds before the token actually expires
TOKEN_SAFETY_MARGIN_SECONDS = 60

SELF_TEST_PLAINTEXT = "Springfield City Services - Test Encryption"

AUTH_PATH = "/sys/v1/session/auth"
ENCRYPT_PATH = "/crypto/v1/encrypt"
DECRYPT_PATH = "/crypto/v1/decrypt"

# What httpx accepts for ``verify``
VerifySetting = Union[bool, ssl.SSLContext]


@dataclass(frozen=True)
class Session:
    """One authenticated HSM session. Replaced wholesale on refresh."""

    token: Optional[str] = None
    expires_at: float = 0.0
    # TLS settings used for every call made under this session
    verify: VerifySetting = True

    def is_live(self, now: float, margin: float = TOKEN_SAFETY_MARGIN_SECONDS) -> bool:
        return bool(self.token) and now < self.expires_at - margin


# ============================================================================
# AUTH STRATEGIES
# ============================================================================


class ApiKeyAuth:
    """Bearer token obtained with the DSM API key"""

    method = AuthMethod.API_KEY

    def __init__(self, settings: HsmSettings):
        self.settings = settings

    @property
    def is_demo(self) -> bool:
        return self.settings.demo_mode

    def request_config(self) -> VerifySetting:
        return True

    async def authenticate(self, open_client: Callable[[VerifySetting], httpx.AsyncClient],
                           now: float) -> Session:
        verify = self.request_config()
        async with open_client(verify) as client:
            # The DSM API key is already the base64 "user:secret" pair
            response = await client.post(
                f"{self.settings.base_url}{AUTH_PATH}",
                headers={"Authorization": f"Basic {self.settings.api_key}"},
            )
        return session_from_auth_response(response, verify, now)


class TrustedCaAuth:
    """Mutual TLS with the enclave certificate pair, app id as Basic user"""

    method = AuthMethod.TRUSTED_CA
    is_demo = False

    def __init__(self, settings: HsmSettings):
        self.settings = settings

    @property
    def cert_paths(self) -> Dict[str, str]:
        return {"cert": self.settings.cert_path, "key": self.settings.key_path}

    def check_certificates(self) -> None:
        """Fail fast if the enclave certificate files are missing

        Raises:
            ConfigurationError: listing every missing path
        """
        missing: List[str] = [
            f"{kind}: {path}" for kind, path in self.cert_paths.items()
            if not os.path.exists(path)
        ]
        if missing:
            raise ConfigurationError(
                f"Certificate files not found: {', '.join(missing)}. Trusted CA "
                "authentication requires certificates to be present in the "
                "confidential computing environment."
            )

    def request_config(self) -> ssl.SSLContext:
        """Client-certificate TLS context, read from disk on every refresh"""
        self.check_certificates()
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        try:
            context.load_cert_chain(
                certfile=self.settings.cert_path, keyfile=self.settings.key_path
            )
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError(f"Unable to load client certificate: {e}") from e
        return context

    def describe_certificate(self) -> Dict[str, str]:
        with open(self.settings.cert_path, "rb") as fh:
            cert = x509.load_pem_x509_certificate(fh.read())
        return {
            "subject": cert.subject.rfc4514_string(),
            "not_after": cert.not_valid_after_utc.isoformat(),
        }

    async def authenticate(self, open_client: Callable[[VerifySetting], httpx.AsyncClient],
                           now: float) -> Session:
        # File reads and key loading stay off the event loop
        verify = await asyncio.to_thread(self.request_config)
        try:
            certificate = await asyncio.to_thread(self.describe_certificate)
            logger.info(
                "Using enclave client certificate",
                cert_path=self.settings.cert_path,
                **certificate,
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid client certificate: {e}") from e

        async with open_client(verify) as client:
            response = await client.post(
                f"{self.settings.base_url}{AUTH_PATH}",
                auth=httpx.BasicAuth(self.settings.app_id, ""),
                headers={"Content-Type": "application/json"},
            )
        return session_from_auth_response(response, verify, now)


def session_from_auth_response(response: httpx.Response, verify: VerifySetting,
                               now: float) -> Session:
    """Turn a /sys/v1/session/auth response into a Session"""
    response.raise_for_status()
    data = response.json()
    return Session(
        token=data["access_token"],
        expires_at=now + float(data["expires_in"]),
        verify=verify,
    )


def build_auth_strategy(settings: HsmSettings) -> Union[ApiKeyAuth, TrustedCaAuth]:
    if settings.auth_method == AuthMethod.TRUSTED_CA:
        return TrustedCaAuth(settings)
    return ApiKeyAuth(settings)


# ============================================================================
# CLIENT
# ============================================================================


class HsmClient:
    """Session-caching client for the Fortanix DSM crypto API"""

    def __init__(
        self,
        settings: HsmSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self._auth = build_auth_strategy(settings)
        self._session = Session()
        self._refresh_lock = asyncio.Lock()
        self._transport = transport
        self._clock = clock
        self.demo_mode = False
        logger.info(
            "HSM client initialized",
            endpoint=settings.base_url,
            auth_method=settings.auth_method.value,
            key_id=settings.key_id,
        )

    @property
    def auth_method(self) -> AuthMethod:
        return self._auth.method

    @property
    def session(self) -> Session:
        return self._session

    @property
    def mode(self) -> str:
        return "demo" if self.demo_mode else "hsm"

    def _open_client(self, verify: VerifySetting) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.timeout_seconds,
            verify=verify,
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def authenticate(self) -> str:
        """Run the auth exchange for the configured method

        Returns:
            The new access token

        Raises:
            ConfigurationError: trusted_ca certificates missing or unreadable
            AuthenticationFailed: transport error, non-2xx, or malformed body
        """
        method = self._auth.method.value
        now = self._clock()

        if self.demo_mode or self._auth.is_demo:
            self._session = Session(token=DEMO_TOKEN, expires_at=now + DEMO_TOKEN_TTL_SECONDS)
            if not self.demo_mode:
                logger.warning("Demo mode: using simulated encryption (not a security control)")
            self.demo_mode = True
            record_hsm_auth(method, "demo")
            return self._session.token

        logger.info("Authenticating to Fortanix DSM", auth_method=method,
                    endpoint=self.settings.base_url)
        try:
            self._session = await self._auth.authenticate(self._open_client, now)
        except ConfigurationError:
            record_hsm_auth(method, "failure")
            raise
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            record_hsm_auth(method, "failure")
            logger.error("DSM authentication failed", auth_method=method, error=str(e))
            raise AuthenticationFailed(f"{method} authentication failed: {e}") from e

        record_hsm_auth(method, "success")
        logger.info(
            "DSM session established",
            auth_method=method,
            expires_in=round(self._session.expires_at - now),
        )
        return self._session.token

    async def ensure_authenticated(self) -> str:
        """Return a live token, re-authenticating at most once per expiry window"""
        if self._session.is_live(self._clock()):
            return self._session.token

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            if not self._session.is_live(self._clock()):
                await self.authenticate()
        return self._session.token

    # ------------------------------------------------------------------
    # Crypto operations
    # ------------------------------------------------------------------

    def _crypto_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._session.token}",
        }

    @track_hsm_request("encrypt")
    async def _post_encrypt(self, plaintext: str) -> Envelope:
        async with self._open_client(self._session.verify) as client:
            response = await client.post(
                f"{self.settings.base_url}{ENCRYPT_PATH}",
                json={
                    "key": {"kid": self.settings.key_id},
                    "alg": "AES",
                    "mode": "CBC",
                    "plain": base64.b64encode(plaintext.encode("utf-8")).decode("ascii"),
                },
                headers=self._crypto_headers(),
            )
        response.raise_for_status()
        data = response.json()
        return Envelope(cipher=data["cipher"], iv=data["iv"])

    @track_hsm_request("decrypt")
    async def _post_decrypt(self, envelope: Envelope) -> str:
        async with self._open_client(self._session.verify) as client:
            response = await client.post(
                f"{self.settings.base_url}{DECRYPT_PATH}",
                json={
                    "key": {"kid": self.settings.key_id},
                    "alg": "AES",
                    "mode": "CBC",
                    "cipher": envelope.cipher,
                    "iv": envelope.iv,
                },
                headers=self._crypto_headers(),
            )
        response.raise_for_status()
        return base64.b64decode(response.json()["plain"]).decode("utf-8")

    async def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt one field value

        Returns:
            Envelope text, or None for empty input (no request is sent)

        Raises:
            EncryptionFailed: on any session, transport or HSM failure
        """
        if not plaintext:
            return None

        try:
            await self.ensure_authenticated()
        except EncryptionLayerError as e:
            record_hsm_operation("encrypt", self.mode, "failure")
            raise EncryptionFailed(f"Failed to encrypt data with Fortanix DSM: {e}") from e

        if self.demo_mode:
            record_hsm_operation("encrypt", "demo", "success")
            return demo_encrypt(plaintext, int(self._clock() * 1000))

        try:
            envelope = await self._post_encrypt(plaintext)
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            record_hsm_operation("encrypt", "hsm", "failure")
            logger.error("Encryption failed", error=str(e))
            raise EncryptionFailed(f"Failed to encrypt data with Fortanix DSM: {e}") from e

        record_hsm_operation("encrypt", "hsm", "success")
        return envelope.to_text()

    async def decrypt(self, text: Optional[str]) -> Optional[str]:
        """Decrypt one stored field value

        Legacy plaintext (anything that is not an envelope) is returned as-is.

        Returns:
            Plaintext, or None for empty input

        Raises:
            DecryptionFailed: on any session, transport or HSM failure
        """
        if not text:
            return None

        try:
            await self.ensure_authenticated()
        except EncryptionLayerError as e:
            record_hsm_operation("decrypt", self.mode, "failure")
            raise DecryptionFailed(f"Failed to decrypt data with Fortanix DSM: {e}") from e

        if self.demo_mode:
            plaintext = demo_decrypt(text)
            if plaintext is not None:
                record_hsm_operation("decrypt", "demo", "success")
                return plaintext

        envelope = parse_envelope(text)
        if envelope is None:
            logger.debug("Legacy plaintext data detected, returning as-is")
            record_hsm_operation("decrypt", self.mode, "legacy")
            return text

        if self.demo_mode:
            record_hsm_operation("decrypt", "demo", "failure")
            raise DecryptionFailed("HSM envelope cannot be decrypted in demo mode")

        try:
            plaintext = await self._post_decrypt(envelope)
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            record_hsm_operation("decrypt", "hsm", "failure")
            logger.error("Decryption failed", error=str(e))
            raise DecryptionFailed(f"Failed to decrypt data with Fortanix DSM: {e}") from e

        record_hsm_operation("decrypt", "hsm", "success")
        return plaintext

    # ------------------------------------------------------------------
    # Startup + probes
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Authenticate and run one encrypt/decrypt self-test

        Raises:
            ConfigurationError, AuthenticationFailed, EncryptionFailed,
            DecryptionFailed: whichever step failed
        """
        logger.info(
            "Initializing Fortanix DSM service",
            endpoint=self.settings.base_url,
            key_id=self.settings.key_id,
            app_id=self.settings.app_id,
            auth_method=self._auth.method.value,
        )
        await self.authenticate()

        encrypted = await self.encrypt(SELF_TEST_PLAINTEXT)
        decrypted = await self.decrypt(encrypted)
        if decrypted != SELF_TEST_PLAINTEXT:
            raise EncryptionFailed("Encryption/decryption self-test failed")

        logger.info(
            "Fortanix DSM service initialized",
            auth_method=self._auth.method.value,
            mode=self.mode,
        )

    async def health_check(self) -> Dict:
        """Structured status for liveness probes. Never raises."""
        try:
            await self.ensure_authenticated()
        except EncryptionLayerError as e:
            return {
                "status": "unhealthy",
                "error": str(e),
                "endpoint": self.settings.base_url,
            }
        return {
            "status": "healthy",
            "endpoint": self.settings.base_url,
            "authenticated": bool(self._session.token),
            "auth_method": self._auth.method.value,
            "key_id": self.settings.key_id,
            "demo_mode": self.demo_mode,
        }

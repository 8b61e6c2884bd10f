"""Shared fixtures: an in-process fake Fortanix DSM behind httpx.MockTransport"""
import base64
import datetime
import json

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from civic_portal.config import AuthMethod, HsmSettings
from civic_portal.security.hsm_client import HsmClient

REAL_API_KEY = "YWJjZGVmOnNlY3JldC12YWx1ZS0xMjM0NTY="


class FakeDsm:
    """Minimal DSM: session auth + AES-CBC-shaped encrypt/decrypt"""

    def __init__(self, expires_in=3600):
        self.expires_in = expires_in
        self.requests = []
        self.auth_requests = []
        self.fail_auth = False
        self.fail_encrypt_after = None
        self.fail_decrypt = False
        self.corrupt_decrypt = False
        self._store = {}

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    @property
    def crypto_requests(self):
        return [r for r in self.requests if r.url.path.startswith("/crypto/")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/sys/v1/session/auth":
            self.auth_requests.append(request)
            if self.fail_auth:
                return httpx.Response(401, json={"message": "invalid credentials"})
            return httpx.Response(200, json={
                "access_token": f"token-{len(self.auth_requests)}",
                "expires_in": self.expires_in,
                "entity_id": "app-entity",
            })

        if not request.headers.get("Authorization", "").startswith("Bearer token-"):
            return httpx.Response(401, json={"message": "missing bearer token"})
        body = json.loads(request.content)

        if path == "/crypto/v1/encrypt":
            if self.fail_encrypt_after is not None and len(self._store) >= self.fail_encrypt_after:
                return httpx.Response(503, json={"message": "HSM busy"})
            n = len(self._store)
            cipher = base64.b64encode(f"ciphertext-block-{n}".encode()).decode()
            iv = base64.b64encode(f"iv-{n:013d}".encode()).decode()
            self._store[(cipher, iv)] = body["plain"]
            return httpx.Response(200, json={"kid": body["key"]["kid"], "cipher": cipher, "iv": iv})

        if path == "/crypto/v1/decrypt":
            if self.fail_decrypt:
                return httpx.Response(400, json={"message": "decryption failed"})
            plain = self._store.get((body["cipher"], body["iv"]))
            if plain is None:
                return httpx.Response(400, json={"message": "bad padding"})
            if self.corrupt_decrypt:
                plain = base64.b64encode(b"something else").decode()
            return httpx.Response(200, json={"kid": body["key"]["kid"], "plain": plain})

        return httpx.Response(404)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def fake_dsm():
    return FakeDsm()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def api_key_settings():
    return HsmSettings(
        auth_method=AuthMethod.API_KEY,
        endpoint="https://dsm.test",
        api_key=REAL_API_KEY,
        key_id="kid-citizen-pii",
    )


@pytest.fixture
def demo_settings():
    return HsmSettings(
        auth_method=AuthMethod.API_KEY,
        endpoint="https://dsm.test",
        api_key="your-api-key-here",
    )


@pytest.fixture
def hsm_client(api_key_settings, fake_dsm, clock):
    return HsmClient(api_key_settings, transport=fake_dsm.transport, clock=clock)


@pytest.fixture
def enclave_certs(tmp_path):
    """Throwaway self-signed client certificate + key in PEM files"""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "enclave-app")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    cert_path = tmp_path / "app_public.pem"
    key_path = tmp_path / "app_private.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return str(cert_path), str(key_path)


@pytest.fixture
def trusted_ca_settings(enclave_certs):
    cert_path, key_path = enclave_certs
    return HsmSettings(
        auth_method=AuthMethod.TRUSTED_CA,
        endpoint="https://apps.dsm.test",
        app_id="app-123",
        key_id="kid-citizen-pii",
        cert_path=cert_path,
        key_path=key_path,
    )

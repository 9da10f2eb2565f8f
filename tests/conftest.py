import asyncio
import inspect
import json
import os
import sys
import tempfile
import time
from pathlib import Path
from urllib.parse import parse_qs, urlparse

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="portalauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-oauth-state-encryption")
os.environ.setdefault("OIDC_ISSUER_URL", "http://idp.test")
os.environ.setdefault("OIDC_CLIENT_ID", "portalauth-test")
os.environ.setdefault("OIDC_CLIENT_SECRET", "client-secret-for-tests")
os.environ.setdefault("OIDC_ADMIN_API_URL", "http://idp.test/admin")
os.environ.setdefault("OIDC_ADMIN_API_TOKEN", "admin-api-token-for-tests")
os.environ.setdefault("DISCOVERY_BASE_DELAY_SECONDS", "0")
# Use Redis in tests via SyncRedisCache to avoid async event loop issues
# Falls back to in-memory if Redis is not available (via ALLOW_REDIS_FALLBACK_DEV)
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import httpx  # noqa: E402
import jwt  # noqa: E402
import pytest  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from jwt.algorithms import RSAAlgorithm  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from portalauth.service.runtime import reset_runtime_for_tests  # noqa: E402

ISSUER = "http://idp.test"


# Shared by every fake provider in the session
PROVIDER_SIGNING_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
PROVIDER_KEY_ID = "idp-test-key-1"


class FakeIdentityProvider:
    """In-process OIDC provider served through ``httpx.MockTransport``.

    Knobs let tests break discovery, the token endpoint or the admin API,
    and every admin call is recorded for assertions.
    """

    def __init__(self):
        self.client_id = os.environ["OIDC_CLIENT_ID"]
        self.codes: dict[str, dict] = {}
        self.access_tokens: dict[str, dict] = {}
        self.discovery_failures = 0
        self.discovery_requests = 0
        self.token_status: int | None = None
        self.token_raises: Exception | None = None
        self.admin_status = 200
        self.admin_calls: list[tuple[str, str, dict | None]] = []
        self.nonce_override: str | None = None
        self.id_token_overrides: dict = {}
        self.signing_key = PROVIDER_SIGNING_KEY
        self.key_id = PROVIDER_KEY_ID
        self.jwks_requests = 0

    @property
    def discovery(self) -> dict:
        return {
            "issuer": ISSUER,
            "authorization_endpoint": f"{ISSUER}/oauth2/authorize",
            "token_endpoint": f"{ISSUER}/oauth2/token",
            "userinfo_endpoint": f"{ISSUER}/oauth2/userInfo",
            "end_session_endpoint": f"{ISSUER}/logout",
            "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
        }

    def authorize(self, authorization_url: str, *, sub: str, email: str, **claims) -> dict:
        """Simulate the user signing in at the provider; returns callback params."""
        query = parse_qs(urlparse(authorization_url).query)
        code = f"code-{len(self.codes) + 1}-{sub}"
        self.codes[code] = {
            "nonce": query["nonce"][0],
            "userinfo": {"sub": sub, "email": email, "email_verified": True, **claims},
        }
        return {"code": code, "state": query["state"][0]}

    def jwks(self) -> dict:
        public_jwk = json.loads(RSAAlgorithm.to_jwk(PROVIDER_SIGNING_KEY.public_key()))
        public_jwk.update({"kid": PROVIDER_KEY_ID, "use": "sig", "alg": "RS256"})
        return {"keys": [public_jwk]}

    def _id_token(self, subject: str, nonce: str) -> str:
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "aud": self.client_id,
            "sub": subject,
            "nonce": nonce,
            "iat": now,
            "exp": now + 3600,
            **self.id_token_overrides,
        }
        return jwt.encode(
            claims, self.signing_key, algorithm="RS256", headers={"kid": self.key_id}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            self.discovery_requests += 1
            if self.discovery_failures > 0:
                self.discovery_failures -= 1
                return httpx.Response(503, json={"error": "unavailable"})
            return httpx.Response(200, json=self.discovery)
        if path == "/.well-known/jwks.json":
            self.jwks_requests += 1
            return httpx.Response(200, json=self.jwks())
        if path == "/oauth2/token":
            if self.token_raises is not None:
                raise self.token_raises
            if self.token_status is not None:
                return httpx.Response(self.token_status, json={"error": "server_error"})
            form = parse_qs(request.content.decode())
            code = form.get("code", [""])[0]
            grant = self.codes.pop(code, None)
            if grant is None:
                return httpx.Response(
                    400,
                    json={"error": "invalid_grant", "error_description": "Invalid authorization code"},
                )
            access_token = f"idp-access-{code}"
            self.access_tokens[access_token] = grant["userinfo"]
            nonce = self.nonce_override or grant["nonce"]
            return httpx.Response(
                200,
                json={
                    "access_token": access_token,
                    "id_token": self._id_token(grant["userinfo"]["sub"], nonce),
                    "token_type": "Bearer",
                    "expires_in": 3600,
                },
            )
        if path == "/oauth2/userInfo":
            token = request.headers.get("authorization", "").removeprefix("Bearer ")
            userinfo = self.access_tokens.get(token)
            if userinfo is None:
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=userinfo)
        if path.startswith("/admin/"):
            payload = json.loads(request.content) if request.content else None
            self.admin_calls.append((request.method, path, payload))
            if self.admin_status >= 400:
                return httpx.Response(self.admin_status, json={"error": "admin_failure"})
            return httpx.Response(200, json={})
        return httpx.Response(404, json={"error": "not_found"})

    def admin_paths(self) -> list[str]:
        return [path for _, path, _ in self.admin_calls]


@pytest.fixture
def fake_idp():
    return FakeIdentityProvider()


@pytest.fixture(autouse=True)
def reset_runtime_state(fake_idp, tmp_path, monkeypatch):
    # Each test gets a fresh memory-store snapshot directory
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    reset_runtime_for_tests(httpx.MockTransport(fake_idp.handler))
    yield
    reset_runtime_for_tests(httpx.MockTransport(fake_idp.handler))


@pytest.fixture
def runtime():
    from portalauth.service.runtime import get_runtime

    return get_runtime()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

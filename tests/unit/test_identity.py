import json
import time

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from mediflow.config import CustomerRecord, IdentityConfig
from mediflow.exceptions import UnauthorizedError
from mediflow.security.policy import DirectoryIdentityContext
from mediflow.security.tokens import TokenVerifier

SECRET = "test-secret-that-is-long-enough-for-hs256"


def generate_keys():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_jwk = jwt.algorithms.RSAAlgorithm.to_jwk(key.public_key())
    jwk_dict = json.loads(public_jwk)
    jwk_dict["kid"] = "test"
    jwk_dict["use"] = "sig"
    jwk_dict["alg"] = "RS256"
    return key, jwk_dict, private_pem


def _context(**kwargs):
    config = IdentityConfig(secret=SECRET, agents=["agent-1", "agent-2"], **kwargs)
    return DirectoryIdentityContext.from_config(config)


def test_resolve_caller_from_shared_secret():
    token = jwt.encode(
        {"sub": "agent-1", "permissions": ["approvals:override"]}, SECRET, algorithm="HS256"
    )
    caller = _context().resolve_caller(token)
    assert caller.agent_id == "agent-1"
    assert caller.has_permission("approvals:override")
    assert caller.claims["sub"] == "agent-1"


def test_scope_claim_and_agent_id_claim():
    token = jwt.encode(
        {"sub": "user-123", "agentId": "agent-2", "scope": "bookings:read approvals:override"},
        SECRET,
        algorithm="HS256",
    )
    caller = _context().resolve_caller(token)
    assert caller.agent_id == "agent-2"
    assert caller.permissions == frozenset({"bookings:read", "approvals:override"})


def test_invalid_tokens_are_rejected():
    ctx = _context()
    with pytest.raises(UnauthorizedError):
        ctx.resolve_caller("")
    with pytest.raises(UnauthorizedError):
        ctx.resolve_caller(jwt.encode({"sub": "agent-1"}, "some-other-secret-of-decent-length", algorithm="HS256"))
    with pytest.raises(UnauthorizedError):
        ctx.resolve_caller(
            jwt.encode({"sub": "agent-1", "exp": int(time.time()) - 300}, SECRET, algorithm="HS256")
        )
    with pytest.raises(UnauthorizedError):
        ctx.resolve_caller(jwt.encode({"role": "agent"}, SECRET, algorithm="HS256"))


def test_audience_is_checked_when_configured():
    ctx = _context(audience="mediflow")
    good = jwt.encode({"sub": "agent-1", "aud": "mediflow"}, SECRET, algorithm="HS256")
    bad = jwt.encode({"sub": "agent-1", "aud": "elsewhere"}, SECRET, algorithm="HS256")
    assert ctx.resolve_caller(good).agent_id == "agent-1"
    with pytest.raises(UnauthorizedError):
        ctx.resolve_caller(bad)


def test_verify_against_jwks(monkeypatch):
    key, jwk_dict, private_pem = generate_keys()
    token = jwt.encode(
        {"sub": "agent-1", "aud": "mediflow", "iss": "https://idp/"},
        private_pem,
        algorithm="RS256",
        headers={"kid": "test"},
    )

    jwks = {"keys": [jwk_dict]}
    calls = []

    class Resp:
        def __init__(self):
            self.status_code = 200

        def raise_for_status(self):
            pass

        def json(self):
            return jwks

    def fake_get(url, timeout=5):
        calls.append(url)
        return Resp()

    monkeypatch.setattr("requests.get", fake_get)

    verifier = TokenVerifier(
        IdentityConfig(jwks_url="http://idp/jwks", audience="mediflow", issuer="https://idp/")
    )
    assert verifier.verify(token)["sub"] == "agent-1"
    assert verifier.verify(token)["iss"] == "https://idp/"
    assert calls == ["http://idp/jwks"]

    unknown_kid = jwt.encode({"sub": "agent-1"}, private_pem, algorithm="RS256", headers={"kid": "other"})
    with pytest.raises(UnauthorizedError):
        verifier.verify(unknown_kid)


def test_no_key_configured():
    with pytest.raises(UnauthorizedError):
        TokenVerifier(IdentityConfig()).verify("a.b.c")


def test_directory_ownership():
    ctx = DirectoryIdentityContext(agents=["agent-1"])
    ctx.add_customer("cust-1", CustomerRecord(agent_id="agent-5", first_name="Jo"))

    assert ctx.owns_resource("agent-5", "cust-1")
    assert not ctx.owns_resource("agent-1", "cust-1")
    assert not ctx.owns_resource("agent-5", "cust-404")
    assert ctx.agent_exists("agent-5")
    assert not ctx.agent_exists("agent-9")
    assert ctx.get_customer("cust-1").first_name == "Jo"

    with pytest.raises(RuntimeError):
        ctx.resolve_caller("token")

"""Tests for PKCE, auth URL building and callback parsing."""
import re

from server_oidc.pkce import (
    build_authorize_url,
    code_challenge_for,
    generate_nonce,
    generate_pkce,
    generate_state,
    parse_callback_url,
)


def test_generate_state_length():
    s = generate_state()
    assert len(s) >= 32
    assert re.match(r"^[A-Za-z0-9_-]+$", s)


def test_generate_state_unique():
    assert len({generate_state() for _ in range(50)}) == 50


def test_generate_nonce_length():
    n = generate_nonce()
    assert len(n) >= 32
    assert re.match(r"^[A-Za-z0-9_-]+$", n)


def test_generate_pkce_returns_verifier_and_challenge():
    verifier, challenge = generate_pkce()
    assert 43 <= len(verifier) <= 128
    assert re.match(r"^[A-Za-z0-9_-]+$", verifier)
    assert re.match(r"^[A-Za-z0-9_-]+$", challenge)
    assert len(challenge) == 43  # base64url(SHA256 digest) no padding
    assert code_challenge_for(verifier) == challenge


def test_code_challenge_rfc7636_vector():
    # RFC 7636 Appendix B
    assert code_challenge_for("dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_build_authorize_url_includes_required_params():
    url = build_authorize_url(
        authorization_endpoint="https://as.example/authorize",
        client_id="client1",
        redirect_uri="https://client.example/cb",
        scope="openid api.read",
        state="mystate",
        code_challenge="challenge123",
        nonce="mynonce",
    )
    assert url.startswith("https://as.example/authorize?")
    assert "response_type=code" in url
    assert "client_id=client1" in url
    assert "redirect_uri=" in url
    assert "scope=" in url
    assert "state=mystate" in url
    assert "code_challenge=challenge123" in url
    assert "code_challenge_method=S256" in url
    assert "nonce=mynonce" in url


def test_build_authorize_url_without_nonce():
    url = build_authorize_url(
        authorization_endpoint="https://as.example/authorize",
        client_id="c",
        redirect_uri="https://c/cb",
        scope="api.read",
        state="s",
        code_challenge="ch",
        nonce=None,
    )
    assert "nonce=" not in url


def test_build_authorize_url_extra_params_cannot_override_protocol_params():
    url = build_authorize_url(
        authorization_endpoint="https://as.example/oauth2/authorize?tenant=t1",
        client_id="c",
        redirect_uri="https://c/cb",
        scope="openid",
        state="real-state",
        code_challenge="ch",
        extra_params={"state": "evil", "prompt": "login"},
    )
    assert url.startswith("https://as.example/oauth2/authorize?tenant=t1&")
    assert "state=real-state" in url
    assert "evil" not in url
    assert "prompt=login" in url


def test_parse_callback_url_success():
    params = parse_callback_url("https://app.example/callback?code=abc&state=xyz")
    assert params.code == "abc"
    assert params.state == "xyz"
    assert params.error is None


def test_parse_callback_url_error():
    params = parse_callback_url(
        "https://app.example/callback?error=access_denied&error_description=User+denied&state=s1"
    )
    assert params.error == "access_denied"
    assert params.error_description == "User denied"
    assert params.state == "s1"
    assert params.code is None


def test_parse_callback_url_without_query():
    params = parse_callback_url("https://app.example/callback")
    assert params.state is None and params.code is None

"""
Tests for grant signing, token value generation and key loading.
"""

import base64
import os
import re
import time

import pytest

from security import (
    generate_token_value, is_admin_token, kid_from_pub, load_keys_from_env, redact,
    sign_grant, token_fingerprint, verify_grant,
)


@pytest.fixture(scope="module")
def keys():
    return load_keys_from_env()


def test_keys_load_from_env(keys):
    priv, pub_pem = keys
    assert pub_pem.startswith(b"-----BEGIN PUBLIC KEY-----")
    assert re.fullmatch(r"[A-Z2-7]{4}(-[A-Z2-7]{4}){5}", kid_from_pub(pub_pem))


def test_keys_load_from_b64_env(monkeypatch, keys):
    priv_pem, pub_pem = os.environ["PRIVATE_KEY_PEM"], os.environ["PUBLIC_KEY_PEM"]
    monkeypatch.delenv("PRIVATE_KEY_PEM")
    monkeypatch.delenv("PUBLIC_KEY_PEM")
    monkeypatch.setenv("PRIVATE_KEY_PEM_B64", base64.b64encode(priv_pem.encode()).decode())
    monkeypatch.setenv("PUBLIC_KEY_PEM_B64", base64.b64encode(pub_pem.encode()).decode())

    _, loaded_pub = load_keys_from_env()
    assert kid_from_pub(loaded_pub) == kid_from_pub(keys[1])


def test_grant_round_trip(keys):
    priv, pub_pem = keys
    payload = {"d": "dev-42", "n": "MainApp", "v": "1.2.0", "i": int(time.time())}
    assert verify_grant(pub_pem, sign_grant(priv, payload)) == payload


def test_expired_grant_rejected(keys):
    priv, pub_pem = keys
    grant = sign_grant(priv, {"d": "dev-42", "e": 1000})
    with pytest.raises(ValueError, match="expired"):
        verify_grant(pub_pem, grant, now=1001)
    assert verify_grant(pub_pem, grant, now=1000)["d"] == "dev-42"


def test_malformed_grant_rejected(keys):
    with pytest.raises(ValueError):
        verify_grant(keys[1], "not-a-grant")


def test_token_values():
    value = generate_token_value(prefix="ABC")
    assert re.fullmatch(r"ABC(-[A-Z2-7]{4}){8}", value)
    assert generate_token_value() != generate_token_value()


def test_token_fingerprint_hides_value():
    fp = token_fingerprint("JKT-SECRET")
    assert "SECRET" not in fp
    assert fp == token_fingerprint("JKT-SECRET")


def test_redact():
    assert redact("JKT-ABCD-EFGH") == "JKT-ABCD…"
    assert redact(None) == ""


def test_admin_token_check():
    assert is_admin_token("test-admin-token")
    assert not is_admin_token("nope")
    assert not is_admin_token(None)

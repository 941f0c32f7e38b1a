# security.py
import os, base64, hashlib, hmac, textwrap, time, msgpack
from typing import Dict, Any, Optional, Tuple
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization

from config import ADMIN_TOKEN, TOKEN_PREFIX

# ===== helpers =====
b64u = lambda b: base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")
def b64u_d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))

def _normalize_pem(s: str) -> str:
    # accept literal "\n" pasted into env vars and CRLF line endings
    return s.replace("\\n", "\n").replace("\r\n", "\n").strip()

def _load_pems(priv_pem: str, pub_pem: str) -> Tuple[Ed25519PrivateKey, bytes]:
    priv_pem, pub_pem = _normalize_pem(priv_pem), _normalize_pem(pub_pem)
    priv = serialization.load_pem_private_key(priv_pem.encode(), password=None)
    pub  = serialization.load_pem_public_key(pub_pem.encode())
    if not isinstance(priv, Ed25519PrivateKey) or not isinstance(pub, Ed25519PublicKey):
        raise RuntimeError("Keys must be Ed25519 PEM.")
    return priv, pub_pem.encode()

def _read_pair(priv_path: str, pub_path: str) -> Optional[Tuple[str, str]]:
    if not (os.path.exists(priv_path) and os.path.exists(pub_path)):
        return None
    with open(priv_path, "r", encoding="utf-8") as f: priv_pem = f.read()
    with open(pub_path,  "r", encoding="utf-8") as f: pub_pem  = f.read()
    return priv_pem, pub_pem

# ===== key loading =====
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

def load_keys_from_env() -> Tuple[Ed25519PrivateKey, bytes]:
    """Grant-signing key pair; first source that yields both halves wins."""
    # 1) mounted secret files
    for pair in (("/etc/secrets/grant_private_key.pem", "/etc/secrets/grant_public_key.pem"),
                 ("/etc/secrets/private.pem",          "/etc/secrets/public.pem")):
        pems = _read_pair(*pair)
        if pems:
            return _load_pems(*pems)

    # 2) PEM text directly in env
    p_priv, p_pub = os.getenv("PRIVATE_KEY_PEM"), os.getenv("PUBLIC_KEY_PEM")
    if p_priv and p_pub:
        return _load_pems(p_priv, p_pub)

    # 3) single-line base64 PEM in env
    p_priv_b64, p_pub_b64 = os.getenv("PRIVATE_KEY_PEM_B64"), os.getenv("PUBLIC_KEY_PEM_B64")
    if p_priv_b64 and p_pub_b64:
        return _load_pems(base64.b64decode(p_priv_b64).decode("utf-8", "strict"),
                          base64.b64decode(p_pub_b64).decode("utf-8", "strict"))

    # 4) explicit file paths
    env_priv_file, env_pub_file = os.getenv("PRIVATE_KEY_FILE"), os.getenv("PUBLIC_KEY_FILE")
    if env_priv_file and env_pub_file:
        pems = _read_pair(env_priv_file, env_pub_file)
        if pems:
            return _load_pems(*pems)

    # 5) local dev keys
    pems = _read_pair(os.path.join(BASE_DIR, "keys", "private.pem"),
                      os.path.join(BASE_DIR, "keys", "public.pem"))
    if pems:
        return _load_pems(*pems)

    raise RuntimeError(
        "Missing grant signing keys. Provide secret files in /etc/secrets, "
        "set PRIVATE_KEY_PEM/PUBLIC_KEY_PEM (or *_B64), "
        "point PRIVATE_KEY_FILE/PUBLIC_KEY_FILE at files, "
        "or add keys/private.pem and keys/public.pem."
    )

def kid_from_pub(pub_pem: bytes, length=24) -> str:
    pub = serialization.load_pem_public_key(pub_pem)
    spki = pub.public_bytes(encoding=serialization.Encoding.DER,
                            format=serialization.PublicFormat.SubjectPublicKeyInfo)
    h = hashlib.sha256(spki).digest()
    b32 = base64.b32encode(h).decode().rstrip("=")
    return "-".join(textwrap.wrap(b32[:length], 4))

# ===== grants =====
def token_fingerprint(token_value: str) -> str:
    """Short, non-reversible stand-in for a token value inside grants."""
    return b64u(hashlib.sha256(token_value.encode()).digest()[:12])

def sign_grant(priv: Ed25519PrivateKey, payload: Dict[str, Any]) -> str:
    body = msgpack.packb(payload, use_bin_type=True)
    sig  = priv.sign(body)
    return f"{b64u(body)}.{b64u(sig)}"

def verify_grant(pub_pem: bytes, grant: str, now: Optional[int] = None) -> Dict[str, Any]:
    """Decode a signed grant. Raises ValueError when malformed, forged or expired."""
    try:
        body_b64, sig_b64 = grant.split(".", 1)
        body = b64u_d(body_b64); sig = b64u_d(sig_b64)
    except ValueError:
        raise ValueError("malformed")
    pub = serialization.load_pem_public_key(pub_pem)
    try:
        pub.verify(sig, body)
    except InvalidSignature:
        raise ValueError("bad signature")
    data = msgpack.unpackb(body, raw=False)
    now = int(time.time()) if now is None else now
    if data.get("e") is not None and int(data["e"]) < now:
        raise ValueError("expired")
    return data

# ===== token values =====
def generate_token_value(prefix: str = TOKEN_PREFIX, blocks: int = 8, block_size: int = 4) -> str:
    # 20 random bytes -> 32 base32 chars -> 8 blocks of 4
    raw_bytes = os.urandom(20)
    body = base64.b32encode(raw_bytes).decode("ascii").rstrip("=")
    chunks = [body[i:i+block_size] for i in range(0, len(body), block_size)]
    return f"{prefix}-" + "-".join(chunks[:blocks])

def redact(secret: Optional[str], keep: int = 8) -> str:
    if not secret:
        return ""
    return secret[:keep] + "…"

# ===== admin capability =====
def is_admin_token(token: Optional[str]) -> bool:
    if not token:
        return False
    return hmac.compare_digest(token.encode(), ADMIN_TOKEN.encode())

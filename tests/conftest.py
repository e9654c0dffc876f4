"""
oinit-ca Test Fixtures
======================

Shared fixtures for all test modules.
"""

import base64
import struct
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import asyncssh
import httpx
import jwt
import pytest


FORCE_COMMAND = "oinit-switch"


# ============================================
# KEYS
# ============================================

def write_keypair(directory: Path, name: str, alg: str = "ssh-ed25519") -> Tuple[str, str]:
    """Generate a key pair and write it as <name> and <name>.pub."""
    key = asyncssh.generate_private_key(alg)
    private_path = directory / name
    public_path = directory / f"{name}.pub"
    key.write_private_key(str(private_path))
    key.write_public_key(str(public_path))
    return str(private_path), str(public_path)


@pytest.fixture
def key_dir(tmp_path):
    path = tmp_path / "keys"
    path.mkdir()
    return path


@pytest.fixture
def ca_paths(key_dir) -> Dict[str, str]:
    """Host CA and user CA key files shared by the default config."""
    host_priv, host_pub = write_keypair(key_dir, "host-ca")
    user_priv, user_pub = write_keypair(key_dir, "user-ca")
    return {
        "host-ca-privkey": host_priv,
        "host-ca-pubkey": host_pub,
        "user-ca-privkey": user_priv,
        "user-ca-pubkey": user_pub,
    }


@pytest.fixture
def user_key():
    """The caller's key pair."""
    return asyncssh.generate_private_key("ssh-ed25519")


@pytest.fixture
def user_pubkey_text(user_key) -> str:
    return user_key.export_public_key("openssh").decode("ascii").strip()


# ============================================
# CONFIG
# ============================================

def render_config(defaults: Dict[str, str], groups: List[Tuple[str, Dict[str, str]]]) -> str:
    lines = [f"{k} = {v}" for k, v in defaults.items()]
    for name, entries in groups:
        lines.append("")
        lines.append(f"[{name}]")
        lines.extend(f"{k} = {v}" for k, v in entries.items())
    return "\n".join(lines) + "\n"


@pytest.fixture
def config_text(ca_paths) -> str:
    """Two groups sharing the global keys, one fixed and one token-bound."""
    return render_config(
        dict(ca_paths, **{"cert-validity": "token"}),
        [
            ("cluster1", {
                "cert-validity": "1h",
                "*.cluster1.example.com": "https://motley-cue.cluster1.example.com",
            }),
            ("login", {
                "login.example.com": "https://motley-cue.example.com/",
            }),
        ],
    )


def find_group(config, name: str):
    return next(g for g in config.host_groups if g.name == name)


@pytest.fixture
def config_file(tmp_path, config_text) -> str:
    path = tmp_path / "config.ini"
    path.write_text(config_text)
    return str(path)


# ============================================
# TOKENS
# ============================================

def make_token(exp: Optional[float] = None, sub: str = "alice", iss: str = "https://op.example.com") -> str:
    """An access token as handed out by an OpenID Connect provider."""
    claims = {"sub": sub, "iss": iss}
    if exp is not None:
        claims["exp"] = exp
    return jwt.encode(claims, "not-checked-by-the-ca", algorithm="HS256")


@pytest.fixture
def token() -> str:
    return make_token(exp=int(time.time()) + 3600)


# ============================================
# MOTLEY_CUE MOCK
# ============================================

class MotleyCueStub:
    """Records requests and answers like a motley_cue instance."""

    def __init__(self, state: str = "deployed", ops: Optional[List[str]] = None):
        self.state = state
        self.ops = ops if ops is not None else ["https://op.example.com"]
        self.status_code = 200
        self.message = ""
        self.fail = False
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path.endswith("/info"):
            return httpx.Response(200, json={"supported_OPs": self.ops})
        if request.url.path.endswith("/user/status"):
            if self.status_code != 200:
                return httpx.Response(self.status_code, json={"detail": "invalid token"})
            return httpx.Response(200, json={"state": self.state, "message": self.message})
        return httpx.Response(404)

    @property
    def status_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/user/status")]


@pytest.fixture
def motley_cue() -> MotleyCueStub:
    return MotleyCueStub()


@pytest.fixture
def motley_http(motley_cue) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(motley_cue))


# ============================================
# CERTIFICATE INSPECTION
# ============================================

def decode_cert_fields(text: str) -> Dict[str, object]:
    """Decode the fixed fields of an ed25519 OpenSSH user certificate."""
    blob = base64.b64decode(text.split()[1])
    pos = 0

    def read_string() -> bytes:
        nonlocal pos
        (length,) = struct.unpack(">I", blob[pos:pos + 4])
        value = blob[pos + 4:pos + 4 + length]
        pos += 4 + length
        return value

    def read_uint(size: int) -> int:
        nonlocal pos
        value = int.from_bytes(blob[pos:pos + size], "big")
        pos += size
        return value

    fields: Dict[str, object] = {"type_name": read_string().decode()}
    read_string()  # nonce
    read_string()  # public key
    fields["serial"] = read_uint(8)
    fields["cert_type"] = read_uint(4)
    fields["key_id"] = read_string().decode()
    fields["principals"] = read_string()
    fields["valid_after"] = read_uint(8)
    fields["valid_before"] = read_uint(8)

    options = {}
    packet = read_string()
    opos = 0
    while opos < len(packet):
        (nlen,) = struct.unpack(">I", packet[opos:opos + 4])
        name = packet[opos + 4:opos + 4 + nlen].decode()
        opos += 4 + nlen
        (dlen,) = struct.unpack(">I", packet[opos:opos + 4])
        data = packet[opos + 4:opos + 4 + dlen]
        opos += 4 + dlen
        # force-command data is itself an SSH string
        options[name] = data[4:].decode() if data else ""
    fields["critical_options"] = options
    read_string()  # extensions
    read_string()  # reserved
    read_string()  # signature key

    signature = read_string()
    (alen,) = struct.unpack(">I", signature[:4])
    fields["signature_algorithm"] = signature[4:4 + alen].decode()
    return fields

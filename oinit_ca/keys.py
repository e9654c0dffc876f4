"""CA key material loading.

The load functions are pure parsers. ``KeyCache`` makes sure that every
configuration entry naming the same path gets the same parsed handle.
"""

import logging
from dataclasses import dataclass, field

import asyncssh

from oinit_ca.errors import KeyParseError

logger = logging.getLogger(__name__)

# Algorithms that can sign unattended. Security-key (sk-*) types need a
# hardware touch and are refused at load time.
SUPPORTED_ALGORITHMS = frozenset({
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "ssh-rsa",
})


def _check_algorithm(key: asyncssh.SSHKey, path: str) -> asyncssh.SSHKey:
    algorithm = key.get_algorithm()
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise KeyParseError(f"Unsupported key algorithm {algorithm} in {path}")
    return key


def load_public_key(path: str) -> asyncssh.SSHKey:
    """Parse an OpenSSH authorized-key formatted public key file."""
    try:
        key = asyncssh.read_public_key(path)
    except (OSError, asyncssh.KeyImportError) as e:
        raise KeyParseError(f"Could not load public key {path}: {e}") from e
    return _check_algorithm(key, path)


def load_private_key(path: str) -> asyncssh.SSHKey:
    """Parse an unencrypted OpenSSH or PEM private key file."""
    try:
        key = asyncssh.read_private_key(path)
    except (OSError, asyncssh.KeyImportError, asyncssh.KeyEncryptionError) as e:
        raise KeyParseError(f"Could not load private key {path}: {e}") from e
    return _check_algorithm(key, path)


@dataclass(frozen=True)
class KeyPair:
    private_key: asyncssh.SSHKey
    public_key: asyncssh.SSHKey

    @property
    def algorithm(self) -> str:
        return self.public_key.get_algorithm()

    def public_key_text(self) -> str:
        """Authorized-key form of the public half, without trailing newline."""
        return self.public_key.export_public_key("openssh").decode("ascii").strip()


@dataclass
class KeyCache:
    """Path-keyed cache of parsed keys, alive for one configuration load."""

    public_keys: dict[str, asyncssh.SSHKey] = field(default_factory=dict)
    private_keys: dict[str, asyncssh.SSHKey] = field(default_factory=dict)

    def public(self, path: str) -> asyncssh.SSHKey:
        if path not in self.public_keys:
            self.public_keys[path] = load_public_key(path)
            logger.debug("Loaded public key %s", path)
        return self.public_keys[path]

    def private(self, path: str) -> asyncssh.SSHKey:
        if path not in self.private_keys:
            self.private_keys[path] = load_private_key(path)
            logger.debug("Loaded private key %s", path)
        return self.private_keys[path]

    def pair(self, private_path: str, public_path: str) -> KeyPair:
        """Load both halves and check that they belong together."""
        private_key = self.private(private_path)
        public_key = self.public(public_path)
        if private_key.public_data != public_key.public_data:
            raise KeyParseError(
                f"Public key {public_path} does not match private key {private_path}"
            )
        return KeyPair(private_key=private_key, public_key=public_key)

"""SSH user certificate construction, signing and self-validation.

Every certificate carries a force-command critical option. A certificate
without it would grant an unrestricted shell, so each signed certificate is
re-imported and checked before it leaves this module.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Optional

import asyncssh
import jwt
from asyncssh.public_key import CERT_TYPE_USER

from oinit_ca.errors import SigningFailedError, ValidationFailedError
from oinit_ca.hostgroups import HostInfo

logger = logging.getLogger(__name__)

DEFAULT_KEY_ID = "oinit-ca"

# Certificate timestamps are unsigned 64-bit
MAX_TIMESTAMP = 2**64 - 1


@dataclass(frozen=True)
class IssuedCertificate:
    certificate: str  # authorized-key text form
    serial: int
    key_id: str
    valid_after: int
    valid_before: int

    @property
    def valid_seconds(self) -> int:
        return self.valid_before - self.valid_after


def _token_claims(token: str) -> dict[str, Any]:
    # The authorization service has already validated the token, only its
    # claims are read here.
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return {}
    return claims if isinstance(claims, dict) else {}


def token_expiry(token: str) -> int:
    """Return the ``exp`` claim of a JWT access token as a unix timestamp."""
    exp = _token_claims(token).get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise SigningFailedError("access token carries no usable expiry")
    # NaN and infinities fail the range check as well
    if not 0 <= exp <= MAX_TIMESTAMP:
        raise SigningFailedError(f"access token expiry out of range: {exp}")
    return int(exp)


def key_id_for(token: str) -> str:
    claims = _token_claims(token)
    sub, iss = claims.get("sub"), claims.get("iss")
    if sub and iss:
        return f"{sub}@{iss}"
    return DEFAULT_KEY_ID


def validity_window(cert_duration: int, token: str, now: int) -> tuple[int, int]:
    """Return (valid_after, valid_before) for a certificate issued at ``now``."""
    if cert_duration == 0:
        return now, token_expiry(token)
    return now, now + cert_duration


def issue_user_certificate(
    host_info: HostInfo,
    public_key: asyncssh.SSHKey,
    token: str,
    force_command: str,
    now: Optional[int] = None,
) -> IssuedCertificate:
    """Sign ``public_key`` with the user CA of the resolved host group.

    Raises SigningFailedError if the certificate cannot be built and
    ValidationFailedError if the signed result does not pass the self-check.
    """
    if not force_command:
        raise SigningFailedError("force command must not be empty")

    if now is None:
        now = int(time.time())
    valid_after, valid_before = validity_window(host_info.cert_duration, token, now)
    if valid_before <= valid_after:
        raise ValidationFailedError(
            f"empty validity window [{valid_after}, {valid_before})"
        )

    serial = secrets.randbelow(2**63)
    key_id = key_id_for(token)

    try:
        cert = host_info.user_ca.private_key.generate_user_certificate(
            public_key,
            key_id,
            serial=serial,
            valid_after=valid_after,
            valid_before=valid_before,
            force_command=force_command,
            permit_x11_forwarding=False,
            permit_agent_forwarding=False,
            permit_port_forwarding=False,
            permit_pty=True,
            permit_user_rc=False,
            comment=None,
        )
        encoded = cert.export_certificate("openssh").decode("ascii").strip()
    except (
        ValueError,
        OverflowError,
        asyncssh.KeyGenerationError,
        asyncssh.KeyExportError,
    ) as e:
        raise SigningFailedError(f"certificate signing failed: {e}") from e

    validate_user_certificate(
        encoded,
        subject_key=public_key,
        ca_public_key=host_info.user_ca.public_key,
        force_command=force_command,
    )

    logger.info(
        "Certificate signed: group=%s pattern=%s serial=%d key_id=%s validity=%ds",
        host_info.group, host_info.name, serial, key_id, valid_before - valid_after,
        extra={"group": host_info.group, "serial": serial},
    )
    return IssuedCertificate(
        certificate=encoded,
        serial=serial,
        key_id=key_id,
        valid_after=valid_after,
        valid_before=valid_before,
    )


def validate_user_certificate(
    encoded: str,
    subject_key: asyncssh.SSHKey,
    ca_public_key: asyncssh.SSHKey,
    force_command: str,
) -> None:
    """Re-import a signed certificate and check it independently.

    Raises ValidationFailedError unless the certificate is a currently valid
    user certificate for ``subject_key``, signed by ``ca_public_key``, whose
    only critical option is exactly ``force_command``.
    """
    try:
        # Import verifies the signature against the embedded signing key
        cert = asyncssh.import_certificate(encoded)
    except asyncssh.KeyImportError as e:
        raise ValidationFailedError(f"certificate does not parse: {e}") from e

    if cert.is_x509:
        raise ValidationFailedError("not an OpenSSH certificate")

    if cert.signing_key.public_data != ca_public_key.public_data:
        raise ValidationFailedError("certificate not signed by the user CA")

    if cert.key.public_data != subject_key.public_data:
        raise ValidationFailedError("certificate bound to the wrong public key")

    options = cert.options
    if not force_command or options.get("force-command") != force_command:
        raise ValidationFailedError("force-command option missing or altered")
    if "source-address" in options:
        raise ValidationFailedError("unexpected critical option source-address")

    try:
        cert.validate(CERT_TYPE_USER, None)
    except ValueError as e:
        raise ValidationFailedError(f"certificate not currently valid: {e}") from e

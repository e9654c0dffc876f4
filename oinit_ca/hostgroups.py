"""Host group registry.

Parses the CA configuration file into an immutable ``Config`` snapshot and
resolves requested hostnames to the owning group's keys, certificate
validity and authorization endpoint.

File layout::

    ; options before any section are global defaults
    user-ca-privkey = /etc/oinit-ca/user-ca
    cert-validity = token

    [cluster1]
    cert-validity = 1h
    *.cluster1.example.com = https://motley-cue.cluster1.example.com
"""

import configparser
import logging
import re
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from oinit_ca.errors import ConfigInvalidError, HostNotFoundError
from oinit_ca.keys import KeyCache, KeyPair

logger = logging.getLogger(__name__)

GLOBAL_SECTION = "DEFAULT"

OPT_HOST_CA_PRIVKEY = "host-ca-privkey"
OPT_HOST_CA_PUBKEY = "host-ca-pubkey"
OPT_USER_CA_PRIVKEY = "user-ca-privkey"
OPT_USER_CA_PUBKEY = "user-ca-pubkey"
OPT_CERT_VALIDITY = "cert-validity"

GROUP_OPTIONS = (
    OPT_HOST_CA_PRIVKEY,
    OPT_HOST_CA_PUBKEY,
    OPT_USER_CA_PRIVKEY,
    OPT_USER_CA_PUBKEY,
    OPT_CERT_VALIDITY,
)

# Validity policy that binds the certificate to the access token's lifetime
TOKEN_VALIDITY = "token"

# Nanoseconds per unit, as accepted by Go-style duration strings
_DURATION_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|h|m|s)")


def parse_duration(text: str) -> int:
    """Parse a duration such as ``1h``, ``90m`` or ``1h30m`` into whole seconds.

    Raises ValueError for anything that is not a valid duration string.
    """
    value = text.strip()
    sign = 1
    if value[:1] in ("+", "-"):
        sign = -1 if value[0] == "-" else 1
        value = value[1:]
    if value == "0":
        return 0
    if not value:
        raise ValueError(f"invalid duration {text!r}")

    total_ns = Fraction(0)
    pos = 0
    while pos < len(value):
        match = _DURATION_PART.match(value, pos)
        if not match:
            raise ValueError(f"invalid duration {text!r}")
        number, unit = match.groups()
        total_ns += Fraction(number) * _DURATION_UNITS[unit]
        pos = match.end()

    return sign * int(total_ns / 1_000_000_000)


def matches_host(host: str, pattern: str) -> bool:
    """Check whether ``host`` matches ``pattern``.

    ``*.example.com`` matches any subdomain of example.com but never
    example.com itself. Any other pattern must equal the host exactly.
    """
    if pattern.startswith("*."):
        root = pattern[2:]
        return host.endswith(root) and host != root
    return host == pattern


@dataclass(frozen=True)
class HostGroup:
    name: str
    host_ca: KeyPair
    user_ca: KeyPair
    cert_validity: str
    cert_duration: int  # seconds, 0 = bound to the access token
    hosts: Mapping[str, str]

    @property
    def token_bound(self) -> bool:
        return self.cert_duration == 0


@dataclass(frozen=True)
class HostInfo:
    """Resolved view of one matched host."""

    name: str
    url: str
    cert_duration: int
    group: str
    host_ca: KeyPair
    user_ca: KeyPair


@dataclass(frozen=True)
class Config:
    """Immutable configuration snapshot shared by all requests."""

    host_groups: tuple[HostGroup, ...] = ()

    def __len__(self) -> int:
        return len(self.host_groups)

    @property
    def groups(self) -> list[str]:
        return [g.name for g in self.host_groups]

    def resolve(self, host: str) -> HostInfo:
        """Return the first group and pattern matching ``host``.

        Groups are tried in file order, and patterns in file order within a
        group.
        """
        for group in self.host_groups:
            for pattern, url in group.hosts.items():
                if matches_host(host, pattern):
                    return HostInfo(
                        name=pattern,
                        url=url,
                        cert_duration=group.cert_duration,
                        group=group.name,
                        host_ca=group.host_ca,
                        user_ca=group.user_ca,
                    )
        raise HostNotFoundError(f"host not found in config: {host}")


def _new_parser() -> configparser.ConfigParser:
    # Defaults are merged by hand, so configparser's own DEFAULT handling is
    # moved out of the way and the global section is read like any other.
    parser = configparser.ConfigParser(
        delimiters=("=",),
        interpolation=None,
        strict=False,
        default_section="\x00defaults",
    )
    parser.optionxform = str
    return parser


def _parse_validity(group: str, validity: str) -> int:
    if validity == TOKEN_VALIDITY:
        return 0
    try:
        seconds = parse_duration(validity)
    except ValueError as e:
        raise ConfigInvalidError(
            f"could not parse cert-validity {validity!r} in hostgroup {group}"
        ) from e
    if seconds <= 0:
        raise ConfigInvalidError(
            f"cert-validity must be at least one second in hostgroup {group}"
        )
    return seconds


def _parse_hosts(group: str, section: Mapping[str, str]) -> dict[str, str]:
    hosts = {}
    for pattern, url in section.items():
        if pattern in GROUP_OPTIONS:
            continue
        url = url.strip()
        if not url.startswith(("http://", "https://")):
            raise ConfigInvalidError(
                f"invalid endpoint URL for {pattern} in hostgroup {group}"
            )
        hosts[pattern] = url.rstrip("/")
    return hosts


def parse_config(text: str) -> Config:
    """Parse configuration text and load every referenced key.

    Raises ConfigInvalidError or KeyParseError; there is no partial result.
    """
    parser = _new_parser()
    try:
        parser.read_string(f"[{GLOBAL_SECTION}]\n{text}")
    except configparser.Error as e:
        raise ConfigInvalidError(f"could not parse configuration: {e}") from e

    defaults = {
        opt: parser.get(GLOBAL_SECTION, opt, fallback="").strip()
        for opt in GROUP_OPTIONS
    }

    keys = KeyCache()
    groups = []
    for name in parser.sections():
        if name == GLOBAL_SECTION:
            continue
        section = parser[name]

        opts = {opt: section.get(opt, defaults[opt]).strip() for opt in GROUP_OPTIONS}
        missing = [opt for opt, value in opts.items() if not value]
        if missing:
            raise ConfigInvalidError(
                f"missing option in hostgroup {name}: {', '.join(missing)}"
            )

        cert_duration = _parse_validity(name, opts[OPT_CERT_VALIDITY])
        hosts = _parse_hosts(name, section)

        group = HostGroup(
            name=name,
            host_ca=keys.pair(opts[OPT_HOST_CA_PRIVKEY], opts[OPT_HOST_CA_PUBKEY]),
            user_ca=keys.pair(opts[OPT_USER_CA_PRIVKEY], opts[OPT_USER_CA_PUBKEY]),
            cert_validity=opts[OPT_CERT_VALIDITY],
            cert_duration=cert_duration,
            hosts=MappingProxyType(hosts),
        )
        groups.append(group)
        logger.debug(
            "Host group %s: %d host pattern(s), validity %s, user CA %s",
            name, len(hosts),
            "token" if group.token_bound else f"{group.cert_duration}s",
            group.user_ca.algorithm,
        )

    return Config(host_groups=tuple(groups))


def load_config(path: str) -> Config:
    """Read and parse the configuration file at ``path``."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigInvalidError(f"could not read configuration {path}: {e}") from e

    config = parse_config(text)
    logger.info("Loaded %d host group(s) from %s", len(config), path)
    return config

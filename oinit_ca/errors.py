"""Error taxonomy for the certificate authority."""


class CAError(Exception):
    """Base class for all oinit-ca errors."""


# --- Fatal at startup ---


class ConfigInvalidError(CAError):
    """Malformed configuration or a host group with missing options."""


class KeyParseError(CAError):
    """A configured key file is missing, unreadable or undecodable."""


# --- Per request ---


class HostNotFoundError(CAError):
    """No host group pattern matches the requested hostname."""


class UnauthorizedError(CAError):
    """Token rejected, user suspended, or status endpoint unusable."""


class UpstreamUnreachableError(CAError):
    """The authorization service did not answer an info query."""


class SigningFailedError(CAError):
    """The certificate could not be constructed or signed."""


class ValidationFailedError(CAError):
    """A signed certificate failed the post-signing self-check."""


class MalformedRequestError(CAError):
    """The request body or the submitted public key could not be parsed."""

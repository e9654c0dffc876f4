"""oinit-ca: SSH user certificates for OpenID Connect authorized users."""

__version__ = "0.1.0"

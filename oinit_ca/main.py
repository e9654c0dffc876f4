"""oinit-ca - FastAPI application.

Issues short-lived SSH user certificates to users authorized by the
motley_cue instance responsible for the requested host.
"""

import asyncio
import logging
import signal

import asyncssh
import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from oinit_ca import __version__
from oinit_ca.config import CAServiceConfig
from oinit_ca.errors import (
    CAError,
    HostNotFoundError,
    MalformedRequestError,
    SigningFailedError,
    UnauthorizedError,
    UpstreamUnreachableError,
    ValidationFailedError,
)
from oinit_ca.hostgroups import Config, load_config
from oinit_ca.logging_config import configure_logging
from oinit_ca.models import (
    CertificateRequest,
    CertificateResponse,
    ErrorResponse,
    HealthResponse,
    HostResponse,
    IndexResponse,
)
from oinit_ca.motleycue import Decision, MotleyCueClient, check_authorization
from oinit_ca.signer import issue_user_certificate

logger = logging.getLogger(__name__)

ERR_BAD_BODY = "Request body is malformed."
ERR_UNKNOWN_HOST = "Unknown host."
ERR_GATEWAY_DOWN = "motley_cue is not reachable."
ERR_UNAUTHORIZED = "User is not authorized or suspended."
ERR_INTERNAL_ERROR = "Internal server error."
ERR_RATE_LIMIT = "Rate limit exceeded."

# (status, caller message, log category) per error class
ERROR_RESPONSES: dict[type, tuple[int, str, str]] = {
    MalformedRequestError: (400, ERR_BAD_BODY, "malformed_request"),
    HostNotFoundError: (400, ERR_UNKNOWN_HOST, "unknown_host"),
    UnauthorizedError: (401, ERR_UNAUTHORIZED, "unauthorized"),
    UpstreamUnreachableError: (502, ERR_GATEWAY_DOWN, "upstream_unreachable"),
    SigningFailedError: (500, ERR_INTERNAL_ERROR, "signing_failed"),
    ValidationFailedError: (500, ERR_INTERNAL_ERROR, "validation_failed"),
}

limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="oinit CA",
    description="Issues short-lived SSH user certificates",
    version=__version__,
    docs_url=None,
    redoc_url=None,
)

app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

# Rate limit is needed at import time for the route decorator
_settings = CAServiceConfig.from_env()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return _error(429, ERR_RATE_LIMIT)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return _error(400, ERR_BAD_BODY)


@app.exception_handler(CAError)
async def ca_error_handler(request: Request, exc: CAError):
    status_code, message, category = ERROR_RESPONSES.get(
        type(exc), (500, ERR_INTERNAL_ERROR, "internal")
    )
    log = logger.error if status_code >= 500 else logger.info
    log(
        "Request rejected: %s %s: %s: %s",
        request.method, request.url.path, category, exc,
        extra={"reason": category},
    )
    return _error(status_code, message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, ERR_INTERNAL_ERROR)


def reload_config(application: FastAPI) -> bool:
    """Load a fresh configuration snapshot and swap it in.

    The previous snapshot stays in place if loading fails.
    """
    settings: CAServiceConfig = application.state.settings
    try:
        config = load_config(settings.config_path)
    except CAError as e:
        logger.error("Configuration reload failed, keeping previous: %s", e)
        return False
    application.state.ca_config = config
    logger.info("Configuration reloaded: %d host group(s)", len(config))
    return True


@app.on_event("startup")
async def startup():
    settings = CAServiceConfig.from_env()
    settings.validate()
    app.state.settings = settings

    configure_logging(settings.log_level, settings.log_format)

    # A CA that cannot load all of its keys must not start
    app.state.ca_config = load_config(settings.config_path)

    app.state.http = httpx.AsyncClient(timeout=settings.upstream_timeout)

    try:
        asyncio.get_running_loop().add_signal_handler(
            signal.SIGHUP, reload_config, app
        )
    except (NotImplementedError, RuntimeError, ValueError):
        logger.debug("SIGHUP reload not available in this process")

    logger.info(
        "oinit-ca started on %s:%d with %d host group(s)",
        settings.host, settings.port, len(app.state.ca_config),
    )


@app.on_event("shutdown")
async def shutdown():
    if hasattr(app.state, "http"):
        await app.state.http.aclose()
    logger.info("oinit-ca shut down")


def _motley_cue(request: Request, url: str) -> MotleyCueClient:
    return MotleyCueClient(
        url,
        http=request.app.state.http,
        timeout=request.app.state.settings.upstream_timeout,
    )


@app.get("/", response_model=IndexResponse)
async def index():
    """Return the running API version."""
    return IndexResponse(version=__version__)


@app.get("/api/health", response_model=HealthResponse)
async def health(request: Request):
    """Health check."""
    config: Config = getattr(request.app.state, "ca_config", Config())
    return HealthResponse(
        status="healthy" if len(config) else "degraded",
        host_groups=len(config),
    )


@app.get(
    "/{host}",
    response_model=HostResponse,
    responses={code: {"model": ErrorResponse} for code in (400, 500, 502)},
)
async def get_host(host: str, request: Request):
    """Return the host CA public key and the supported OpenID Connect providers."""
    config: Config = request.app.state.ca_config
    host_info = config.resolve(host)

    info = await _motley_cue(request, host_info.url).get_info()

    return HostResponse(
        publickey=host_info.host_ca.public_key_text(),
        providers=info.supported_ops,
    )


@app.post(
    "/{host}/certificate",
    response_model=CertificateResponse,
    status_code=201,
    responses={code: {"model": ErrorResponse} for code in (400, 401, 429, 500, 502)},
)
@limiter.limit(_settings.rate_limit)
async def post_host_certificate(host: str, body: CertificateRequest, request: Request):
    """Generate an SSH certificate for the given public key and access token."""
    # One snapshot for the whole request, a reload may swap it meanwhile
    config: Config = request.app.state.ca_config
    settings: CAServiceConfig = request.app.state.settings

    try:
        public_key = asyncssh.import_public_key(body.pubkey.strip())
    except asyncssh.KeyImportError as e:
        raise MalformedRequestError(f"public key does not parse: {e}") from e

    host_info = config.resolve(host)

    decision = await check_authorization(_motley_cue(request, host_info.url), body.token)
    if decision is not Decision.ALLOW:
        logger.info(
            "Issuance denied by %s for host %s", host_info.url, host,
            extra={"host": host, "reason": "denied"},
        )
        raise UnauthorizedError("user is suspended or in an unknown state")

    # Signing and the self-check are CPU bound
    issued = await asyncio.to_thread(
        issue_user_certificate,
        host_info,
        public_key,
        body.token,
        force_command=settings.force_command,
    )

    logger.info(
        "Certificate issued: host=%s group=%s serial=%d validity=%ds",
        host, host_info.group, issued.serial, issued.valid_seconds,
        extra={"host": host, "group": host_info.group, "serial": issued.serial},
    )
    return CertificateResponse(certificate=issued.certificate)

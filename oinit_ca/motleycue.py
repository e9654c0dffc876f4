"""Client for the motley_cue authorization service and the issuance decision.

Fetching the user's state and reducing it to an allow/deny decision are kept
as two separate steps so that the reduction rule can be audited on its own.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from oinit_ca.errors import UnauthorizedError, UpstreamUnreachableError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class UserState(str, Enum):
    NOT_DEPLOYED = "not_deployed"
    DEPLOYED = "deployed"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "UserState":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class Decision(Enum):
    ALLOW = "allow"
    DENY = "deny"


def reduce_state(state: UserState) -> Decision:
    """Reduce a user state to an issuance decision.

    Deployment is done on first login, not by the CA, so a user who is not
    yet deployed is still allowed a certificate.
    """
    if state in (UserState.NOT_DEPLOYED, UserState.DEPLOYED):
        return Decision.ALLOW
    return Decision.DENY


@dataclass
class ServiceInfo:
    supported_ops: list[str] = field(default_factory=list)


@dataclass
class UserStatus:
    state: UserState
    message: str = ""


class MotleyCueClient:
    """Minimal async client for one motley_cue instance.

    Pass a shared ``httpx.AsyncClient`` to reuse connections; without one a
    client is opened per call.
    """

    def __init__(
        self,
        base_url: str,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http
        self._timeout = timeout

    async def _get(self, path: str, headers: Optional[dict[str, str]] = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._http is not None:
            return await self._http.get(url, headers=headers, timeout=self._timeout)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.get(url, headers=headers)

    async def get_info(self) -> ServiceInfo:
        """Return the OpenID Connect providers supported by the service."""
        try:
            resp = await self._get("/info")
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("motley_cue info request failed: %s: %s", self.base_url, e)
            raise UpstreamUnreachableError(f"{self.base_url} is not reachable") from e

        ops = data.get("supported_OPs") if isinstance(data, dict) else None
        if not isinstance(ops, list):
            logger.warning("motley_cue info response malformed: %s", self.base_url)
            raise UpstreamUnreachableError(f"{self.base_url} returned malformed info")
        return ServiceInfo(supported_ops=[str(op) for op in ops])

    async def get_user_status(self, token: str) -> UserStatus:
        """Return the state of the user owning ``token``.

        An invalid token and an unreachable service both raise
        UnauthorizedError.
        """
        try:
            resp = await self._get(
                "/user/status",
                headers={"Authorization": f"Bearer {token}"},
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.info("motley_cue status request failed: %s: %s", self.base_url, e)
            raise UnauthorizedError("user status could not be obtained") from e

        if not isinstance(data, dict):
            raise UnauthorizedError("user status response malformed")

        return UserStatus(
            state=UserState.parse(data.get("state")),
            message=str(data.get("message") or ""),
        )


async def check_authorization(client: MotleyCueClient, token: str) -> Decision:
    """Ask the authorization service about ``token`` and decide on issuance."""
    status = await client.get_user_status(token)
    decision = reduce_state(status.state)
    if decision is Decision.DENY:
        logger.info(
            "User state %s at %s: %s", status.state.value, client.base_url,
            status.message or "no message",
        )
    else:
        logger.debug(
            "User state %s at %s: %s", status.state.value, client.base_url, decision.value,
        )
    return decision

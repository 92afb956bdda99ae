from typing import Mapping

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from settlement.errors import SettlementError
from settlement.signature import SIGNATURE_FIELD, php_urlencode

logger = structlog.get_logger(__name__)


class GatewayUnavailable(SettlementError):
    pass


def validation_payload(params: Mapping[str, str]) -> str:
    """Received fields minus the signature, in the order they arrived."""
    return "&".join(
        f"{key}={php_urlencode(str(value))}"
        for key, value in params.items()
        if key != SIGNATURE_FIELD
    )


class GatewayValidator:
    """Asks the gateway to confirm that it really sent a notification."""

    def __init__(self, validate_url: str, client: httpx.AsyncClient = None, timeout: float = 10.0):
        self._validate_url = validate_url
        self._client = client
        self._timeout = timeout

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, client: httpx.AsyncClient, payload: str) -> httpx.Response:
        response = await client.post(
            self._validate_url,
            content=payload,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        response.raise_for_status()
        return response

    async def is_valid(self, params: Mapping[str, str]) -> bool:
        payload = validation_payload(params)
        try:
            if self._client is not None:
                response = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._post(client, payload)
        except httpx.HTTPError as e:
            logger.error("gateway_validation_unavailable", url=self._validate_url, error=str(e))
            raise GatewayUnavailable(str(e)) from e

        return response.text.strip() == "VALID"

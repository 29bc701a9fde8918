"""Shared HTTP plumbing for external capability clients."""

import asyncio
import httpx
from typing import Dict, Optional, Any, cast
from nelo.utils.exceptions import ExternalCapabilityError
from nelo.utils.logger import get_logger

logger = get_logger("http_client")


class HttpCapability:
    """Base class wrapping one JSON HTTP API with retry and error translation."""

    service_name = "capability"

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

        if not self.api_key:
            logger.warning(f"⚠️  {self.service_name} API key not configured")

        self.headers = {"Content-Type": "application/json"}
        if self.api_key:
            self.headers["Authorization"] = f"Bearer {self.api_key}"

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
        max_retries: int = 2
    ) -> Dict[str, Any]:
        """Make HTTP request with retry logic; raises ExternalCapabilityError."""
        url = f"{self.base_url}{endpoint}"

        for attempt in range(max_retries + 1):
            try:
                if attempt > 0:
                    wait_time = min(2 ** attempt, 10)
                    logger.info(f"Retrying {method} {endpoint} in {wait_time}s (attempt {attempt + 1}/{max_retries + 1})")
                    await asyncio.sleep(wait_time)

                async with httpx.AsyncClient(transport=self.transport) as client:
                    response = await client.request(
                        method=method,
                        url=url,
                        headers=self.headers,
                        json=data,
                        params=params,
                        timeout=self.timeout
                    )

                logger.info(f"{self.service_name} {method} {endpoint} - Status: {response.status_code} (attempt {attempt + 1})")

                try:
                    response_data = response.json()
                except ValueError as json_error:
                    logger.error(f"Invalid JSON response: {json_error}")
                    if attempt < max_retries:
                        continue
                    raise ExternalCapabilityError(
                        f"Invalid JSON response from {self.service_name}",
                        status_code=response.status_code,
                        transient=True,
                    )

                if not isinstance(response_data, dict):
                    response_data = {"data": response_data}

                if response.status_code >= 500:
                    # Server errors - retry
                    logger.warning(f"Server error {response.status_code}, will retry if attempts remain")
                    if attempt < max_retries:
                        continue
                    raise ExternalCapabilityError(
                        response_data.get("error", f"Server error {response.status_code}"),
                        status_code=response.status_code,
                        response_data=response_data,
                        transient=True,
                    )

                if response.status_code >= 400:
                    # Client errors - don't retry
                    error_message = response_data.get("error", "Unknown client error occurred")
                    logger.error(f"{self.service_name} client error: {error_message}")
                    raise ExternalCapabilityError(
                        error_message,
                        status_code=response.status_code,
                        response_data=response_data,
                    )

                if response_data.get("error"):
                    raise ExternalCapabilityError(str(response_data["error"]), response_data=response_data)

                return cast(Dict[str, Any], response_data)

            except httpx.RequestError as e:
                logger.warning(f"Network error on attempt {attempt + 1}: {str(e)}")
                if attempt < max_retries:
                    continue
                raise ExternalCapabilityError(
                    f"{self.service_name} network error after {max_retries + 1} attempts: {str(e)}",
                    transient=True,
                )

        raise ExternalCapabilityError(f"{self.service_name}: maximum retry attempts exhausted", transient=True)

"""KYC verifier client."""

from typing import Optional
import httpx
from nelo.schemas.core import KYCLevel, UserRecord
from nelo.services.http_client import HttpCapability
from nelo.utils.config import settings
from nelo.utils.exceptions import ExternalCapabilityError
from nelo.utils.logger import get_logger

logger = get_logger("kyc_service")


class KYCService(HttpCapability):
    """Identity verification returning a tier."""

    service_name = "kyc"

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(
            base_url or settings.kyc_api_url,
            settings.kyc_api_key if api_key is None else api_key,
            transport=transport,
        )

    async def verify(self, user: UserRecord) -> KYCLevel:
        """Submit the user for verification. Slow; awaited inline by the engine."""
        response = await self._make_request("POST", "/verifications", data={
            "user_id": user.user_id,
            "phone_number": user.whatsapp_number,
        })
        level = str(response.get("level", KYCLevel.NONE.value)).upper()
        try:
            tier = KYCLevel(level)
        except ValueError:
            raise ExternalCapabilityError(f"Unknown KYC level: {level}", response_data=response)
        logger.info(f"KYC result for {user.user_id}: {tier.value}")
        return tier

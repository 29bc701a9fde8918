"""Handle resolver: human-readable names to ledger addresses."""

import re
from typing import Optional
import httpx
from nelo.schemas.core import NamedRecipient, AddressRecipient
from nelo.services.http_client import HttpCapability
from nelo.utils.config import settings
from nelo.utils.exceptions import ExternalCapabilityError, InvalidRecipient
from nelo.utils.logger import get_logger

logger = get_logger("name_resolver")

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")


class NameResolver(HttpCapability):
    """Resolves tagged recipients to addresses."""

    service_name = "resolver"

    def __init__(self, base_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(base_url or settings.resolver_api_url, api_key="", transport=transport)

    async def lookup(self, handle: str) -> Optional[str]:
        """Address for a handle, or None when it is not registered."""
        try:
            response = await self._make_request("GET", f"/names/{handle}")
        except ExternalCapabilityError as e:
            if e.status_code == 404:
                return None
            raise
        address = response.get("address")
        return str(address) if address and ADDRESS_PATTERN.match(str(address)) else None

    async def resolve(self, recipient) -> str:
        """
        Resolve a NamedRecipient or validate an AddressRecipient.

        Raises:
            InvalidRecipient: If the handle is unknown or the address malformed
        """
        if isinstance(recipient, AddressRecipient):
            if not ADDRESS_PATTERN.match(recipient.address):
                raise InvalidRecipient(recipient.address)
            return recipient.address

        if isinstance(recipient, NamedRecipient):
            address = await self.lookup(recipient.handle)
            if not address:
                logger.info(f"Handle not registered: {recipient.handle}")
                raise InvalidRecipient(recipient.handle)
            logger.debug(f"Resolved {recipient.handle} -> {address}")
            return address

        raise InvalidRecipient(str(recipient))

"""
WhatsApp service integration using Twilio API.
Outbound text delivery for replies and notifications.
"""

import asyncio
from typing import Dict, Optional, Any, List
from twilio.rest import Client
from nelo.utils.logger import get_logger
from nelo.utils.config import settings

logger = get_logger("whatsapp_service")

# Twilio rejects WhatsApp bodies above this length
MAX_BODY_LENGTH = 1600


def split_message(message: str, limit: int = MAX_BODY_LENGTH) -> List[str]:
    """Split on line boundaries so each chunk fits one WhatsApp message."""
    if len(message) <= limit:
        return [message]

    chunks: List[str] = []
    current = ""
    for line in message.split("\n"):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


class WhatsAppService:
    """WhatsApp service using Twilio API."""

    def __init__(self, client: Optional[Client] = None):
        self.client = client
        if self.client is None:
            self.initialize_client()

    def initialize_client(self):
        """Initialize Twilio client."""
        account_sid = settings.twilio_account_sid
        auth_token = settings.twilio_auth_token

        if not account_sid or not auth_token:
            logger.warning("Twilio credentials not configured")
            return

        try:
            self.client = Client(account_sid, auth_token)
            logger.info("Twilio client initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize Twilio client: {e}")

    @staticmethod
    def _whatsapp_address(number: str) -> str:
        return number if number.startswith("whatsapp:") else f"whatsapp:{number}"

    async def send_message(self, to: str, message: str) -> Dict[str, Any]:
        """Send a WhatsApp message, splitting long bodies."""
        if not self.client:
            logger.error("Twilio client not initialized")
            return {"success": False, "error": "Twilio client not initialized"}

        from_number = settings.twilio_whatsapp_number
        if not from_number:
            logger.error("Twilio WhatsApp number not configured")
            return {"success": False, "error": "WhatsApp number not configured"}

        to = self._whatsapp_address(to)
        from_number = self._whatsapp_address(from_number)

        try:
            sids = []
            for chunk in split_message(message):
                message_instance = await asyncio.to_thread(
                    self.client.messages.create, body=chunk, from_=from_number, to=to
                )
                sids.append(message_instance.sid)

            logger.info(f"Message sent to {to}: {', '.join(sids)}")
            return {"success": True, "message_sids": sids}

        except Exception as e:
            logger.error(f"Failed to send WhatsApp message to {to}: {e}")
            return {"success": False, "error": str(e)}

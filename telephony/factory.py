"""
Telephony Provider Factory - instantiates the gateway client from config.

The factory hides provider differences behind the TelephonyGateway
protocol. Twilio is the only provider shipped; other providers plug in
by adding an entry to _PROVIDERS.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from config.settings import TelephonyConfig
from telephony.base import TelephonyGateway

logger = structlog.get_logger()


class TelephonyFactory:
    """
    Creates a telephony gateway from TelephonyConfig.

    Usage:
        gateway = TelephonyFactory.create(settings.telephony)
        session_id = await gateway.place_call(...)
    """

    _PROVIDERS = {
        "twilio": ("telephony.twilio_client", "TwilioClient"),
    }

    @staticmethod
    def create(config: TelephonyConfig) -> TelephonyGateway:
        """
        Raises:
            ValueError: If the provider is not supported.
        """
        provider = (config.provider or "").lower()
        if provider == "twilio":
            from telephony.twilio_client import TwilioClient
            client = TwilioClient(
                account_sid=config.account_sid,
                auth_token=config.auth_token,
                from_number=config.from_number,
            )
            logger.info("telephony_client_created", provider="twilio")
            return client

        raise ValueError(
            f"Unsupported telephony provider: {config.provider}. "
            f"Supported: {', '.join(TelephonyFactory._PROVIDERS)}"
        )

    @staticmethod
    def detect_provider_from_webhook(payload: dict[str, Any]) -> Optional[str]:
        """Twilio webhooks carry CallSid + CallStatus; None if unrecognized."""
        if "CallSid" in payload:
            return "twilio"
        return None

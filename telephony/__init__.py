"""
Telephony gateway for PSTN call control.

Usage:
    from telephony import TelephonyFactory
    gateway = TelephonyFactory.create(settings.telephony)
    session_id = await gateway.place_call(destination="+14155550100", ...)
"""
from telephony.base import CallbackUrls, PlaceCallOptions, TelephonyGateway
from telephony.factory import TelephonyFactory
from telephony.twilio_client import TwilioClient
from telephony.twiml import (
    ControlDocumentKind, apology_document, empty_document, hangup_document, render_control_document,
)

__all__ = [
    "CallbackUrls", "PlaceCallOptions", "TelephonyGateway", "TelephonyFactory", "TwilioClient",
    "ControlDocumentKind", "apology_document", "empty_document", "hangup_document",
    "render_control_document",
]

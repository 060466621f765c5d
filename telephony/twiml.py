"""
Call-control documents (TwiML).

Rendering is pure: the same kind and params always produce byte-identical
XML, so documents can be cached, pushed via update_live_call, or compared
in tests.
"""
from __future__ import annotations

import xml.etree.ElementTree as ET
from enum import Enum
from typing import Any, Optional

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

DEFAULT_VOICE = "alice"
APOLOGY_TEXT = "We're sorry, there was a technical issue. Goodbye."
RECORDING_PROMPT = "Press 1 to speak with an agent, or 9 to opt out."
ESCALATION_TEXT = "Please hold while I connect you with a member of our team."
GOODBYE_TEXT = "Thank you for your time. Goodbye."


class ControlDocumentKind(str, Enum):
    GREETING = "greeting"
    GATHER_SPEECH = "gather_speech"
    PLAY_AUDIO = "play_audio"
    ESCALATE = "escalate"
    GOODBYE = "goodbye"


def _speak(parent: ET.Element, params: dict[str, Any], text: Optional[str] = None) -> None:
    """Play synthesized audio when available, otherwise fall back to <Say>."""
    audio_url = params.get("audio_url")
    if audio_url:
        ET.SubElement(parent, "Play").text = audio_url
        return
    text = text if text is not None else params.get("text", "")
    if text:
        say = ET.SubElement(parent, "Say", voice=params.get("voice") or DEFAULT_VOICE)
        if params.get("language"):
            say.set("language", params["language"])
        say.text = text


def _gather(root: ET.Element, params: dict[str, Any]) -> None:
    action_url = params.get("action_url", "")
    gather = ET.SubElement(root, "Gather")
    gather.set("input", "speech dtmf")
    gather.set("action", action_url)
    gather.set("method", "POST")
    gather.set("speechTimeout", "auto")
    gather.set("timeout", str(params.get("timeout", 5)))
    gather.set("numDigits", "1")
    if params.get("language"):
        gather.set("language", params["language"])
    _speak(gather, params)
    # No input: come back to the same handler with an empty result.
    if action_url:
        ET.SubElement(root, "Redirect", method="POST").text = action_url


def _render(root: ET.Element) -> str:
    return XML_DECLARATION + ET.tostring(root, encoding="unicode")


def render_control_document(kind: ControlDocumentKind | str, params: Optional[dict[str, Any]] = None) -> str:
    """
    Render a TwiML document.

    params:
        text, audio_url, voice, language - what to speak
        action_url - where the provider posts the next gather/recording
        timeout - seconds of silence before the gather gives up
        transfer_number - escalation target; without it the call is closed
        max_length - recording cap for play_audio turns
    """
    kind = ControlDocumentKind(kind)
    params = params or {}
    root = ET.Element("Response")

    if kind in (ControlDocumentKind.GREETING, ControlDocumentKind.GATHER_SPEECH):
        _gather(root, params)

    elif kind == ControlDocumentKind.PLAY_AUDIO:
        _speak(root, params)
        if params.get("action_url"):
            _speak(root, {"voice": params.get("voice"), "language": params.get("language")},
                   text=RECORDING_PROMPT)
            record = ET.SubElement(root, "Record")
            record.set("action", params["action_url"])
            record.set("method", "POST")
            record.set("maxLength", str(params.get("max_length", 30)))
            record.set("timeout", str(params.get("timeout", 3)))
            record.set("finishOnKey", "19#")
            record.set("playBeep", "false")

    elif kind == ControlDocumentKind.ESCALATE:
        _speak(root, params, text=params.get("text") or ESCALATION_TEXT)
        if params.get("transfer_number"):
            ET.SubElement(root, "Dial").text = params["transfer_number"]
        else:
            ET.SubElement(root, "Hangup")

    elif kind == ControlDocumentKind.GOODBYE:
        _speak(root, params, text=params.get("text") or GOODBYE_TEXT)
        ET.SubElement(root, "Hangup")

    return _render(root)


def apology_document() -> str:
    """Safe fallback: apologize and hang up."""
    root = ET.Element("Response")
    ET.SubElement(root, "Say", voice=DEFAULT_VOICE).text = APOLOGY_TEXT
    ET.SubElement(root, "Hangup")
    return _render(root)


def hold_document(seconds: int = 30) -> str:
    """Keep the line open while a pushed document is prepared."""
    root = ET.Element("Response")
    ET.SubElement(root, "Pause", length=str(seconds))
    return _render(root)


def hangup_document() -> str:
    root = ET.Element("Response")
    ET.SubElement(root, "Hangup")
    return _render(root)


def empty_document() -> str:
    return _render(ET.Element("Response"))

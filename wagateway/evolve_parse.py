from typing import Any, Dict, Optional

# Evolution API event name -> gateway event type
EVENT_TAGS = {
    "messages.upsert": "Message",
    "message": "Message",
    "messages.update": "ReadReceipt",
    "presence.update": "Presence",
    "chats.update": "ChatPresence",
    "messages.set": "HistorySync",
    "call": "CallOffer",
    "qrcode.updated": "QR",
}

# Baileys disconnect reason for a device removed from the phone
LOGGED_OUT_STATUS = 401


def event_tag(event: str) -> Optional[str]:
    """Map an Evolution event name (any case, dots or underscores) to a gateway tag."""
    name = (event or "").lower().replace("_", ".")
    return EVENT_TAGS.get(name)


def unwrap_event_data(data: Any) -> Dict[str, Any]:
    """
    Evolution sends either the full envelope {"event", "instance", "data"}
    or the bare data object; return the data object.
    """
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        return data["data"]
    return data if isinstance(data, dict) else {"value": data}


def extract_qr_code(qr_result: Dict[str, Any]) -> Optional[str]:
    """
    Extract QR code from an Evolution API response or qrcode.updated event.

    Evolution API may return QR code data under "base64", "qrcode", "code"
    or "qr", sometimes nested under "qrcode", and possibly prefixed with a
    data URL. Returns the raw base64 (or raw code) without the prefix.
    """
    if not qr_result:
        return None

    nested = qr_result.get("qrcode")
    if isinstance(nested, dict):
        qr_result = nested

    qr_data = (
        qr_result.get("base64") or
        qr_result.get("qrcode") or
        qr_result.get("code") or
        qr_result.get("qr")
    )
    if not qr_data or not isinstance(qr_data, str):
        return None

    if qr_data.startswith("data:") and "," in qr_data:
        qr_data = qr_data.split(",", 1)[1]

    return qr_data


def extract_pairing_code(qr_result: Dict[str, Any]) -> Optional[str]:
    nested = qr_result.get("qrcode")
    if isinstance(nested, dict):
        qr_result = nested
    return qr_result.get("pairingCode")


def extract_connection_state(data: Dict[str, Any]) -> Optional[str]:
    """State of a connection.update event: "open", "connecting" or "close"."""
    state = data.get("state")
    if state is None and isinstance(data.get("instance"), dict):
        state = data["instance"].get("state")
    return state


def extract_status_reason(data: Dict[str, Any]) -> Optional[int]:
    reason = data.get("statusReason")
    try:
        return int(reason) if reason is not None else None
    except (TypeError, ValueError):
        return None


def extract_jid(data: Dict[str, Any]) -> Optional[str]:
    """The paired account's WhatsApp id, reported as "wuid" on connection.update."""
    return data.get("wuid") or data.get("ownerJid") or data.get("jid")


def extract_chat_id(payload: dict) -> Optional[str]:
    data = payload.get("data") or {}
    key = data.get("key") or {}
    return key.get("remoteJid")


def extract_message_id(payload: dict) -> Optional[str]:
    data = payload.get("data") or {}
    key = data.get("key") or {}
    return key.get("id")

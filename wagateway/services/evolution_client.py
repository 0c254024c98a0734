"""
Evolution API REST client.

Instance management (create, connect/QR, state, logout, delete) and the
data-plane calls used by a tenant's live session.
"""
import httpx
from typing import Optional, Dict, Any, List

from ..errors import ProtocolError


class EvolutionAPIError(ProtocolError):
    """Raised when Evolution API returns an error"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.response_status = status_code


def normalize_number(chat_id: str) -> str:
    """
    Convert a chat id into the number format Evolution API expects.

    - Phone format: "5511999999999@s.whatsapp.net" -> "5511999999999"
    - LID format: "170166654656630@lid" -> kept as-is
    - Plain number: "5511999999999" -> kept as-is
    """
    if chat_id.endswith("@lid"):
        return chat_id
    if "@" in chat_id and not chat_id.endswith("@g.us"):
        return chat_id.split("@")[0]
    return chat_id


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        nested = body.get("response")
        message = body.get("message") or (nested.get("message") if isinstance(nested, dict) else None)
        if message:
            return str(message)
    return str(body)


class EvolutionClient:
    """Client for interacting with Evolution API"""

    def __init__(
        self,
        server_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send one request and return the decoded JSON body.

        Raises:
            EvolutionAPIError: On HTTP errors, transport errors, or an error body
        """
        if not self.server_url:
            raise EvolutionAPIError("Evolution server URL not configured")

        async with httpx.AsyncClient(
            timeout=timeout or self.timeout, transport=self._transport
        ) as client:
            try:
                response = await client.request(
                    method, f"{self.server_url}{path}", json=json, headers=self._headers()
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise EvolutionAPIError(
                    f"Failed to {operation}: HTTP {e.response.status_code}: {_error_detail(e.response)}",
                    status_code=e.response.status_code,
                ) from e
            except httpx.RequestError as e:
                raise EvolutionAPIError(f"Failed to {operation}: {str(e)}") from e

        if not response.content:
            return {}
        result = response.json()

        # Evolution API sometimes reports errors in a 200 body
        if isinstance(result, dict) and result.get("error") is True:
            raise EvolutionAPIError(
                f"Failed to {operation}: {result.get('message', 'Unknown error')}"
            )
        return result

    # ------------------------------------------------------------------
    # Instance management
    # ------------------------------------------------------------------

    async def create_instance(self, instance_name: str) -> Dict[str, Any]:
        """
        Create a new WhatsApp instance in Evolution API.

        Events are consumed over the WebSocket, so no webhook is registered.
        """
        payload = {
            "instanceName": instance_name,
            "integration": "WHATSAPP-BAILEYS",
            "qrcode": True,
        }
        return await self._request("POST", "/instance/create", "create instance", json=payload)

    async def get_qr_code(self, instance_name: str) -> Dict[str, Any]:
        """
        Ask the instance to connect.

        Returns:
            Dict with a base64 QR code and/or pairingCode when pairing is needed,
            or the instance state when the stored session was resumed
        """
        return await self._request("GET", f"/instance/connect/{instance_name}", "get QR code")

    async def get_connection_state(self, instance_name: str) -> str:
        """
        Get connection state for an instance.

        Returns:
            "open", "connecting" or "close"
        """
        result = await self._request(
            "GET", f"/instance/connectionState/{instance_name}", "get connection state", timeout=10.0
        )
        return result.get("state") or result.get("instance", {}).get("state", "unknown")

    async def logout_instance(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/instance/logout/{instance_name}", "logout instance")

    async def delete_instance(self, instance_name: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"/instance/delete/{instance_name}", "delete instance")

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_text_message(
        self,
        instance_name: str,
        chat_id: str,
        text: str,
        quoted_message_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send a text message via Evolution API.

        Args:
            instance_name: Evolution instance of the tenant
            chat_id: WhatsApp chat ID (e.g., "5511999999999@s.whatsapp.net")
            text: Message text to send
            quoted_message_id: Optional message ID to reply/quote (helps with @lid contacts)
        """
        payload: Dict[str, Any] = {
            "number": normalize_number(chat_id),
            "text": text
        }

        if quoted_message_id:
            payload["quoted"] = {
                "key": {
                    "remoteJid": chat_id,
                    "fromMe": False,
                    "id": quoted_message_id
                }
            }

        return await self._request(
            "POST", f"/message/sendText/{instance_name}", "send message", json=payload, timeout=10.0
        )

    async def send_presence(
        self,
        instance_name: str,
        chat_id: str,
        presence: str = "composing",
        delay: int = 1000,
    ) -> Dict[str, Any]:
        """
        Send presence status (typing indicator).

        Args:
            presence: "composing", "recording", "available", "unavailable" or "paused"
            delay: Delay in milliseconds for the presence
        """
        payload = {
            "number": normalize_number(chat_id),
            "delay": delay,
            "presence": presence
        }
        return await self._request(
            "POST", f"/chat/sendPresence/{instance_name}", "send presence", json=payload, timeout=10.0
        )

    async def mark_as_read(
        self,
        instance_name: str,
        chat_id: str,
        message_ids: List[str],
    ) -> Dict[str, Any]:
        """Mark messages as read (send read receipts / blue checkmarks)."""
        payload = {
            "readMessages": [
                {"remoteJid": chat_id, "fromMe": False, "id": message_id}
                for message_id in message_ids
            ]
        }
        return await self._request(
            "POST", f"/chat/markMessageAsRead/{instance_name}", "mark as read", json=payload, timeout=10.0
        )

    async def get_base64_from_media(
        self,
        instance_name: str,
        message: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Download the media of a received message as base64."""
        payload = {"message": message, "convertToMp4": False}
        return await self._request(
            "POST", f"/chat/getBase64FromMediaMessage/{instance_name}", "download media", json=payload
        )

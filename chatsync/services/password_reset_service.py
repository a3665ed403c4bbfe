"""
Client for the external password-reset code service
"""
import logging
from typing import Optional

import httpx

from chatsync.core.config import settings

logger = logging.getLogger(__name__)


class PasswordResetError(Exception):
    """The code service refused the request or could not be reached"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PasswordResetClient:
    """POST /send-code and /verify-code against the reset code service"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PASSWORD_RESET_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self._transport = transport

    async def send_code(self, email: str) -> str:
        email = (email or "").strip().lower()
        if not email:
            raise ValueError("Email is required")
        return await self._post("/send-code", {"email": email})

    async def verify_code(self, email: str, code: str) -> str:
        email = (email or "").strip().lower()
        code = (code or "").strip()
        if not email or not code:
            raise ValueError("Email and code are required")
        return await self._post("/verify-code", {"email": email, "code": code})

    async def _post(self, path: str, payload: dict) -> str:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"Password reset service unreachable: {e}")
            raise PasswordResetError(f"Password reset service unreachable: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = {}
        message = str(data.get("message") or "") if isinstance(data, dict) else ""

        if resp.is_error or (isinstance(data, dict) and data.get("valid") is False):
            raise PasswordResetError(message or f"Request failed with status {resp.status_code}", resp.status_code)
        return message

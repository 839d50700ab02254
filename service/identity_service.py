# service/identity_service.py
from typing import Optional
import httpx
from fastapi import status
from config.settings import settings
from core.entities import CallerIdentity
from util.enums import ErrorMessage
from util.errors import AppError
import logging

logger = logging.getLogger(__name__)


class IdentityService:
    """
    Resolve a bearer token to a caller identity via the identity provider's
    account endpoint. Rejections surface before any pipeline work and are
    never retried.
    """

    def __init__(
        self,
        endpoint: str = settings.IDENTITY_ENDPOINT,
        project_id: str = settings.IDENTITY_PROJECT_ID,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url: str = f"{endpoint.rstrip('/')}/account"
        self._project_id = project_id
        self._transport = transport

    async def verify(self, token: Optional[str]) -> CallerIdentity:
        if not token:
            raise AppError.of(ErrorMessage.MISSING_TOKEN)

        timeout = httpx.Timeout(10.0, connect=5.0)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                res = await client.get(
                    self._url,
                    headers={
                        "X-Appwrite-Project": self._project_id,
                        "X-Appwrite-JWT": token,
                    },
                )
        except httpx.RequestError as e:
            logger.error("identity.request_error err=%s", type(e).__name__)
            raise AppError.of(ErrorMessage.IDENTITY_UNAVAILABLE)

        if res.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN):
            logger.warning("identity.rejected status=%d", res.status_code)
            raise AppError.of(ErrorMessage.INVALID_TOKEN)

        if res.status_code // 100 != 2:
            logger.error("identity.unexpected status=%d", res.status_code)
            raise AppError.of(ErrorMessage.IDENTITY_UNAVAILABLE)

        try:
            data = res.json()
        except ValueError:
            data = {}
        user_id = data.get("$id") if isinstance(data, dict) else None
        if not user_id:
            logger.error("identity.malformed_account")
            raise AppError.of(ErrorMessage.INVALID_TOKEN)

        logger.info("identity.ok user=%s", user_id)
        return CallerIdentity(
            user_id=str(user_id), email=data.get("email"), name=data.get("name")
        )

"""
Client HTTP de l'API d'authentification backend.

Enveloppe attendue:
    {"success": bool, "data": {...}, "error": {"code": str, "message": str}}

Erreurs:
    - AuthApiError: réponse HTTP reçue mais en échec (code backend, statut)
    - AuthNetworkError: aucune réponse HTTP (timeout, connexion refusée...)
"""

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger("session_sync.auth_api")

RATE_LIMITED = "RATE_LIMITED"
INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
NETWORK_ERROR = "NETWORK_ERROR"


class AuthApiError(Exception):
    """Échec renvoyé par le backend."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def is_unauthorized(self) -> bool:
        return self.status_code == 401 and self.code != INVALID_CREDENTIALS

    @property
    def is_retryable(self) -> bool:
        return self.status_code is not None and self.status_code >= 500

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status_code={self.status_code!r})"


class AuthNetworkError(AuthApiError):
    """Aucune réponse HTTP reçue."""

    def __init__(self, message: str) -> None:
        super().__init__(NETWORK_ERROR, message, status_code=None)

    @property
    def is_retryable(self) -> bool:
        return True


class AuthApiClient:
    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, token: Optional[str] = None, json: Any = None) -> Dict[str, Any]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await self._client.request(method, path, headers=headers, json=json)
        except httpx.TransportError as e:
            logger.warning("auth_api_network_error method=%s path=%s error=%s", method, path, repr(e))
            raise AuthNetworkError(str(e) or type(e).__name__) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400 or body.get("success") is False:
            error = body.get("error") or {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            code = error.get("code") or ("UNAUTHENTICATED" if response.status_code == 401 else "HTTP_ERROR")
            message = error.get("message") or body.get("message") or f"HTTP {response.status_code}"
            logger.info("auth_api_error method=%s path=%s status=%s code=%s", method, path, response.status_code, code)
            raise AuthApiError(code, message, response.status_code, error.get("retry_after"))

        data = body.get("data")
        if data is None:
            data = {k: v for k, v in body.items() if k != "success"}
        return data

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        return await self._request("POST", "api/auth/login", json={"email": email, "password": password})

    async def logout(self, token: str) -> Dict[str, Any]:
        return await self._request("POST", "api/auth/logout", token=token)

    async def me(self, token: str) -> Dict[str, Any]:
        return await self._request("GET", "api/auth/user", token=token)

    async def refresh(self, token: str) -> Dict[str, Any]:
        return await self._request("POST", "api/auth/refresh", token=token)

    async def validate_session(self, token: str) -> Dict[str, Any]:
        return await self._request("POST", "api/auth/validate-session", token=token)

    async def extend_session(self, token: str) -> Dict[str, Any]:
        return await self._request("POST", "api/auth/extend-session", token=token)

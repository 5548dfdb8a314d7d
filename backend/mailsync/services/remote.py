"""Remote mail API client — the opaque request(action, params, options) capability over httpx."""

import base64
import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from mailsync.errors import AuthError, RemoteError

logger = logging.getLogger(__name__)

# Logical action -> (HTTP method, path template)
ACTIONS = {
    "Folders": ("GET", "/v1/folders"),
    "MessageList": ("GET", "/v1/messages"),
    "Message": ("GET", "/v1/messages/{id}"),
    "MessageUpdate": ("PUT", "/v1/messages/{id}"),
    "MessageDelete": ("DELETE", "/v1/messages/{id}"),
    "Emails": ("POST", "/v1/emails"),
    "EmailCancel": ("DELETE", "/v1/emails/{id}"),
}


def basic_auth_header(auth_token: str) -> str:
    return "Basic " + base64.b64encode(auth_token.encode("utf-8")).decode("ascii")


def trim_api_base(api_base: str) -> str:
    return api_base[:-1] if api_base.endswith("/") else api_base


def message_path(message_id: str) -> str:
    return f"/v1/messages/{quote(str(message_id), safe='')}"


class HttpRemote:
    """Calls the mail REST API. Raises RemoteError on transport failures and non-2xx replies."""

    def __init__(
        self,
        api_base: str = "",
        auth_token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = trim_api_base(api_base)
        self.auth_token = auth_token
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self):
        await self._client.aclose()

    def _headers(self, options: dict) -> dict:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        auth_header = options.get("auth_header")
        token = options.get("auth_token") or self.auth_token
        if auth_header:
            headers["Authorization"] = auth_header
        elif token:
            headers["Authorization"] = basic_auth_header(token)
        elif options.get("auth_required", True):
            raise AuthError("Missing auth token")
        return headers

    async def request(self, action: str, params: Optional[dict] = None, options: Optional[dict] = None) -> Any:
        options = options or {}
        params = params or {}
        if action not in ACTIONS and "path_override" not in options:
            raise RemoteError(f"Unknown remote action: {action}", action=action)

        method, template = ACTIONS.get(action, ("GET", ""))
        method = options.get("method", method)
        path = options.get("path_override") or template.format(id=quote(str(params.get("id", "")), safe=""))
        base = trim_api_base(options.get("api_base") or self.api_base)
        headers = self._headers(options)

        query = options.get("query")
        body = None
        if method in ("GET", "DELETE"):
            query = query if query is not None else {k: v for k, v in params.items() if k != "id"} or None
        else:
            body = params

        try:
            response = await self._client.request(method, f"{base}{path}", headers=headers, params=query, json=body)
        except httpx.HTTPError as e:
            raise RemoteError(f"{action} request failed: {e}", action=action) from e

        if response.status_code >= 400:
            raise RemoteError(
                f"Request failed {response.status_code}: {response.text or response.reason_phrase}",
                action=action,
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

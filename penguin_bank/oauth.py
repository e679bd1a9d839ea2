"""OAuth 2.1 discovery and flow endpoints.

These handlers only reproduce the response shapes MCP clients expect during
connector setup. Nothing is verified: codes and tokens are random strings that
are never stored or checked.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

from aiohttp import web

LOGGER = logging.getLogger("penguin_bank.oauth")

TOKEN_TTL_SECONDS = 3600
SCOPES_SUPPORTED = ("read", "write")


def external_base_url(request: web.Request) -> str:
    """Return the externally visible base URL accounting for reverse proxies."""

    proto = request.headers.get("X-Forwarded-Proto", request.scheme)

    # Cloudflare reports the client scheme in CF-Visitor
    cf_visitor = request.headers.get("CF-Visitor")
    if cf_visitor and '"scheme":"https"' in cf_visitor:
        proto = "https"

    host = request.headers.get("X-Forwarded-Host") or request.headers.get("Host") or request.host
    return f"{proto.split(',')[0].strip()}://{host}"


def _with_query(uri: str, params: Dict[str, str]) -> str:
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


async def _read_payload(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    if request.content_type == "application/json":
        try:
            payload = await request.json()
        except ValueError as exc:
            raise web.HTTPBadRequest(text=f"Invalid JSON payload: {exc}") from exc
        return payload if isinstance(payload, dict) else {}
    form = await request.post()
    return dict(form)


class OAuthStubs:
    """Discovery metadata plus ``/auth``, ``/token`` and ``/register`` handlers."""

    def __init__(self, issuer: Optional[str] = None) -> None:
        self.issuer = issuer

    def register_routes(self, app: web.Application) -> None:
        app.router.add_get("/.well-known/oauth-authorization-server", self.metadata)
        app.router.add_get("/auth", self.authorize)
        app.router.add_post("/token", self.token)
        app.router.add_post("/register", self.register)

    async def metadata(self, request: web.Request) -> web.Response:
        base_url = external_base_url(request)
        metadata = {
            "issuer": self.issuer or base_url,
            "authorization_endpoint": f"{base_url}/auth",
            "token_endpoint": f"{base_url}/token",
            "registration_endpoint": f"{base_url}/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["none"],
            "scopes_supported": list(SCOPES_SUPPORTED),
        }
        return web.json_response(metadata, headers={"Cache-Control": "public, max-age=86400"})

    async def authorize(self, request: web.Request) -> web.Response:
        params = request.rel_url.query
        redirect_uri = params.get("redirect_uri")
        if not redirect_uri:
            return web.json_response(
                {"error": "invalid_request", "error_description": "redirect_uri is required"},
                status=400,
            )

        redirect_params = {"code": secrets.token_urlsafe(24)}
        state = params.get("state")
        if state is not None:
            redirect_params["state"] = state
        location = _with_query(redirect_uri, redirect_params)
        LOGGER.info("Issued authorization code for client %s", params.get("client_id"))
        return web.Response(status=302, headers={"Location": location})

    async def token(self, request: web.Request) -> web.Response:
        payload = await _read_payload(request)
        scope = payload.get("scope") or " ".join(SCOPES_SUPPORTED)
        return web.json_response(
            {
                "access_token": secrets.token_urlsafe(32),
                "token_type": "Bearer",
                "expires_in": TOKEN_TTL_SECONDS,
                "scope": scope,
            },
            headers={"Cache-Control": "no-store"},
        )

    async def register(self, request: web.Request) -> web.Response:
        payload = await _read_payload(request)
        client = dict(payload)
        client["client_id"] = secrets.token_urlsafe(16)
        client["client_id_issued_at"] = int(time.time())
        client.setdefault("token_endpoint_auth_method", "none")
        LOGGER.info("Registered OAuth client %s", client.get("client_name", client["client_id"]))
        return web.json_response(client, status=201)

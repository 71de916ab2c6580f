"""HTTP transport for Site Kit Auth.

Provides the Starlette application exposing the front and admin entry
points, and a uvicorn runner. When a ``host_token`` is configured the
host platform opens and closes user sessions through ``/session``.
"""

from __future__ import annotations

import contextlib
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import httpx
from starlette.applications import Starlette
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from sitekit_auth.auth.controller import Authentication
from sitekit_auth.auth.session import CodeRegistry, SessionManager
from sitekit_auth.config import Environment
from sitekit_auth.context import ANONYMOUS, Principal, RequestContext
from sitekit_auth.logging_config import get_logger
from sitekit_auth.security import (
    NonceManager,
    constant_time_equals,
    generate_secure_token,
)
from sitekit_auth.storage import create_store

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from starlette.requests import Request

    from sitekit_auth.config import Config
    from sitekit_auth.storage import KeyValueStore

logger = get_logger(__name__)


def create_http_app(
    config: Config,
    store: KeyValueStore | None = None,
    session_manager: SessionManager | None = None,
    http_client: httpx.AsyncClient | None = None,
    code_registry: CodeRegistry | None = None,
) -> Starlette:
    """Create the Starlette ASGI application.

    Args:
        config: Application configuration
        store: Key-value store, built from the configuration if omitted
        session_manager: Host sessions identifying the requesting user
        http_client: Outbound HTTP client; created (and closed) by the app
            lifespan if omitted
        code_registry: Registry of exchanged one-time codes

    Returns:
        Configured Starlette application
    """
    if store is None:
        store = create_store(
            encryption_key=(
                config.storage_encryption_key.get_secret_value()
                if config.storage_encryption_key
                else None
            ),
            file_path=config.storage_path,
        )

    if config.secret_key is not None:
        secret_key = config.secret_key.get_secret_value()
    else:
        logger.warning("No secret_key configured; nonces will not survive a restart")
        secret_key = generate_secure_token(32)

    nonces = NonceManager(secret_key, lifetime=config.nonce_lifetime)
    sessions = session_manager or SessionManager(
        session_timeout=timedelta(minutes=config.session_timeout_minutes)
    )
    codes = code_registry or CodeRegistry()

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if http_client is not None:
            app.state.http_client = http_client
            yield
            return

        async with httpx.AsyncClient(timeout=config.http_timeout) as client:
            app.state.http_client = client
            yield

    async def build_context(request: Request, is_admin: bool) -> RequestContext:
        session_id = request.cookies.get(config.session_cookie_name)
        session = await sessions.get_session(session_id)
        return RequestContext(
            config=config,
            store=store,
            nonces=nonces,
            http_client=request.app.state.http_client,
            principal=session.principal if session else ANONYMOUS,
            query=dict(request.query_params),
            method=request.method,
            is_admin=is_admin,
            session_token=session.session_id if session else "",
        )

    def _host_authorized(request: Request) -> bool:
        if config.host_token is None:
            return False
        scheme, _, token = request.headers.get("authorization", "").partition(" ")
        return scheme.lower() == "bearer" and constant_time_equals(
            token, config.host_token.get_secret_value()
        )

    async def open_session(request: Request) -> JSONResponse:
        """Open a session for a user the host platform has logged in.

        Expects ``{"user_id": int, "capabilities": [str], "email": str}``
        and sets the session cookie on the response.
        """
        if not _host_authorized(request):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        if not isinstance(body, dict):
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        user_id = body.get("user_id")
        capabilities = body.get("capabilities", [])
        email = body.get("email")
        if (
            not isinstance(user_id, int)
            or isinstance(user_id, bool)
            or user_id <= 0
            or not isinstance(capabilities, list)
            or not all(isinstance(c, str) for c in capabilities)
            or (email is not None and not isinstance(email, str))
        ):
            return JSONResponse({"error": "Invalid principal"}, status_code=400)

        principal = Principal(
            user_id=user_id, capabilities=frozenset(capabilities), email=email
        )
        session_id = await sessions.create_session(principal)

        response_data: dict[str, Any] = {"status": "ok", "user_id": user_id}
        if config.environment == Environment.LOCAL:
            response_data["session_id"] = session_id
        response = JSONResponse(response_data, status_code=201)
        response.set_cookie(
            key=config.session_cookie_name,
            value=session_id,
            httponly=True,
            secure=config.environment != Environment.LOCAL,
            samesite="lax",
            max_age=config.session_timeout_minutes * 60,
        )
        logger.info("Opened session for user %s", user_id)
        return response

    async def close_session(request: Request) -> JSONResponse:
        """Close the session named by the session cookie."""
        if not _host_authorized(request):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        session_id = request.cookies.get(config.session_cookie_name)
        if session_id:
            await sessions.invalidate_session(session_id)
        response = JSONResponse({"status": "ok"})
        response.delete_cookie(config.session_cookie_name)
        return response

    async def health_check(request: Request) -> JSONResponse:
        """Health check endpoint."""
        return JSONResponse({
            "status": "ok",
            "app_name": config.app_name,
            "environment": config.environment.value,
        })

    async def front(request: Request) -> Response:
        """Front entry point; receives the OAuth callback."""
        ctx = await build_context(request, is_admin=False)
        response = await Authentication(ctx, codes).handle_request()
        if response is not None:
            return response
        return JSONResponse({"site": config.site_name, "url": ctx.home_url()})

    async def admin(request: Request) -> Response:
        """Admin entry point; runs actions or returns the landing data."""
        ctx = await build_context(request, is_admin=True)
        response = await Authentication(ctx, codes).handle_request()
        if response is None:
            return JSONResponse({"error": "Not found"}, status_code=404)
        return response

    routes = [
        Route("/health", health_check, methods=["GET"]),
        Route("/", front, methods=["GET"]),
        Route(config.admin_path, admin, methods=["GET", "POST"]),
    ]

    if config.host_token is not None:
        routes.append(Route("/session", open_session, methods=["POST"]))
        routes.append(Route("/session", close_session, methods=["DELETE"]))
    else:
        logger.warning("No host_token configured; /session is disabled")

    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.store = store
    app.state.session_manager = sessions
    app.state.nonces = nonces
    return app


async def run_http(app: Starlette, host: str, port: int) -> None:
    """Run the HTTP server using uvicorn.

    Args:
        app: Starlette ASGI application
        host: Host to bind to
        port: Port to bind to
    """
    import uvicorn

    logger.info("Starting Site Kit Auth on %s:%d", host, port)

    config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()

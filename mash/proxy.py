"""HTTP proxy that lets the model reach capability providers through curl."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from mash.config import DEFAULT_PROXY_HOST, proxy_port
from mash.registry import (
    DEFAULT_CALL_TIMEOUT,
    CapabilityTimeoutError,
    ProviderCallError,
    ProviderRegistry,
    UnknownCapabilityError,
    UnknownProviderError,
    format_capability_listing,
)
from mash.schemas import (
    CapabilityCallRequest,
    CapabilityCallResponse,
    ErrorResponse,
    HealthResponse,
    ProxyErrorCode,
    ToolListing,
)

logger = logging.getLogger(__name__)

CALL_ROUTE = "/mcp/call"

# HTTP status per proxy error kind. Provider-reported tool failures are not
# errors at this level: they come back as 200 with ``is_error: true``.
ERROR_STATUS = {
    ProxyErrorCode.UNKNOWN_PROVIDER: 404,
    ProxyErrorCode.UNKNOWN_CAPABILITY: 404,
    ProxyErrorCode.TIMEOUT: 504,
    ProxyErrorCode.PROVIDER_ERROR: 502,
    ProxyErrorCode.INTERNAL_ERROR: 500,
}


def base_url(host: str = DEFAULT_PROXY_HOST, port: int | None = None) -> str:
    return f"http://{host}:{port or proxy_port()}"


def _error(
    code: ProxyErrorCode,
    detail: str,
    *,
    server: str | None = None,
    tool: str | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS[code],
        content=ErrorResponse(
            detail=detail,
            error_code=code,
            server=server,
            tool=tool,
        ).model_dump(mode="json"),
    )


def create_app(
    registry: ProviderRegistry,
    *,
    call_timeout: float = DEFAULT_CALL_TIMEOUT,
    listing_base_url: str | None = None,
    connect_on_startup: bool = False,
) -> FastAPI:
    """Build the proxy application around a provider registry.

    Args:
        registry: Registry the proxy reads from (never mutated by requests)
        call_timeout: Upper bound in seconds for one provider call
        listing_base_url: Base URL used in the curl examples of the listing
        connect_on_startup: Connect configured providers when the app starts
            and close them on shutdown (standalone ``mash serve``)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if connect_on_startup:
            status = await registry.connect_all()
            connected = [name for name, error in status.items() if error is None]
            logger.info(f"Proxy started with providers: {', '.join(connected) or 'none'}")
        try:
            yield
        finally:
            if connect_on_startup:
                await registry.close()

    app = FastAPI(
        title="mash capability proxy",
        description="Forwards capability calls from shell commands to MCP servers",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = registry

    @app.post(CALL_ROUTE, response_model=CapabilityCallResponse)
    async def call_capability(request: CapabilityCallRequest):
        """Forward one capability call and return its normalized result."""
        logger.info(f"Received capability call: server={request.server}, tool={request.tool}")
        try:
            response = await registry.call(
                request.server,
                request.tool,
                request.arguments,
                timeout=call_timeout,
            )
        except UnknownProviderError as e:
            return _error(ProxyErrorCode.UNKNOWN_PROVIDER, str(e), server=request.server, tool=request.tool)
        except UnknownCapabilityError as e:
            return _error(ProxyErrorCode.UNKNOWN_CAPABILITY, str(e), server=request.server, tool=request.tool)
        except CapabilityTimeoutError as e:
            logger.warning(str(e))
            return _error(ProxyErrorCode.TIMEOUT, str(e), server=request.server, tool=request.tool)
        except ProviderCallError as e:
            logger.error(str(e))
            return _error(ProxyErrorCode.PROVIDER_ERROR, str(e), server=request.server, tool=request.tool)

        logger.info(
            f"Completed capability call: server={request.server}, tool={request.tool}, "
            f"is_error={response.is_error}"
        )
        return response

    @app.get("/mcp/tools", response_model=ToolListing)
    async def list_tools() -> ToolListing:
        """Structured listing of every connected capability."""
        snapshot = registry.snapshot()
        return ToolListing(
            registry_version=snapshot.version,
            capabilities=snapshot.capabilities(),
        )

    @app.get("/mcp/listing", response_class=PlainTextResponse)
    async def listing() -> str:
        """The capability listing text as embedded into the system prompt."""
        return format_capability_listing(registry.snapshot(), listing_base_url or base_url())

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        snapshot = registry.snapshot()
        return HealthResponse(
            proxy="healthy",
            providers=snapshot.provider_names(),
            capabilities=len(snapshot.capabilities()),
            registry_version=snapshot.version,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return _error(ProxyErrorCode.INTERNAL_ERROR, str(exc))

    return app


def create_server(app: FastAPI, *, host: str = DEFAULT_PROXY_HOST, port: int | None = None):
    """Build a uvicorn server for running the proxy inside an existing event loop."""
    import uvicorn

    config = uvicorn.Config(app, host=host, port=port or proxy_port(), log_level="warning")
    return uvicorn.Server(config)

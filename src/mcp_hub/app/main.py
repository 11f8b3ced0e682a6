"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mcp_hub import __version__
from mcp_hub.app.config import API_PREFIX, STORE_DIR, ensure_directories, load_settings
from mcp_hub.app.routers import configs, connections, debug, events, logs, oauth, processes, servers
from mcp_hub.app.services.hub import McpHub
from mcp_hub.app.services.logging_service import get_logger, setup_logging
from mcp_hub.app.services.persistence import JsonFileStore

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    # Startup
    ensure_directories()
    settings = load_settings()
    setup_logging(level=settings.log_level.upper())
    logger.info("Starting MCP Hub...")
    hub = McpHub(JsonFileStore(STORE_DIR), settings)
    await hub.start()
    # Store on app state for access from routers
    app.state.hub = hub
    logger.info("MCP Hub started successfully")
    yield
    # Shutdown
    logger.info("Shutting down MCP Hub...")
    await hub.stop()


app = FastAPI(
    title="MCP Hub API",
    description="Connect to, supervise and debug Model Context Protocol servers",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(configs.router, prefix=API_PREFIX)
app.include_router(connections.router, prefix=API_PREFIX)
app.include_router(debug.router, prefix=API_PREFIX)
app.include_router(events.router, prefix=API_PREFIX)
app.include_router(logs.router, prefix=API_PREFIX)
app.include_router(oauth.router, prefix=API_PREFIX)
app.include_router(processes.router, prefix=API_PREFIX)
app.include_router(servers.router, prefix=API_PREFIX)


@app.get(f"{API_PREFIX}/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}

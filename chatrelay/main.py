"""Main FastAPI application for chatrelay.

Run with ``uvicorn chatrelay.main:app``.
"""

from .app import create_app
from .config_loader import get_log_level, get_server_settings, load_config
from .logging import setup_logging

# Load configuration
config = load_config()

# Initialize logging
logger = setup_logging(get_log_level(config))

# Server configuration - CHATRELAY_HOST / CHATRELAY_PORT take priority over the file
SERVER = get_server_settings(config)

app = create_app(config)


@app.on_event("startup")
async def startup_event():
    """Handle application startup."""
    logger.info("chatrelay starting up...")
    logger.info("Configured bind address %s:%s", SERVER.host, SERVER.port)
    logger.info("chatrelay ready to handle requests")

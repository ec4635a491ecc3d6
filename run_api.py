"""
Serve the CRM data coordinator over HTTP.

  python run_api.py

Coordinator settings come from CRM_* environment variables (see
crm_core/config.py); API_HOST and API_PORT choose the bind address.
"""

import os

import uvicorn

from crm_core.api import create_api_app
from crm_core.config import get_settings
from crm_core.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def main():
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_json)

    host = os.environ.get("API_HOST", "0.0.0.0")
    port = int(os.environ.get("API_PORT", 8000))
    logger.info(
        "Starting coordinator API",
        host=host,
        port=port,
        data_source=settings.resolved_data_source.value,
        docs=f"http://{host}:{port}/docs",
    )

    uvicorn.run(create_api_app(), host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()

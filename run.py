#!/usr/bin/env python3
"""
Compliance Workflow Engine Entry Point

Starts the FastAPI server using WORKFLOWS_* settings from the environment.
"""

import sys

from compliance_workflows.api import run_server
from compliance_workflows.config import get_config
from compliance_workflows.logging_config import setup_logging


if __name__ == "__main__":
    settings = get_config()
    logger = setup_logging(settings.log_level, settings.log_format, settings.log_file)
    logger.info(f"Starting compliance workflow engine on {settings.api_host}:{settings.api_port}")

    try:
        run_server(settings.api_host, settings.api_port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down compliance workflow engine")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)

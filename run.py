#!/usr/bin/env python3
"""
Arrears System Entry Point

Starts the FastAPI server with the arrears and collections engine.
"""

import sys

from arrears_core.api import run_server
from arrears_core.config import get_config
from arrears_core.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)

    print("Starting Arrears & Collections System...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Arrears & Collections System...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

#!/usr/bin/env python3
"""
ESS Bridge Entry Point

Starts the FastAPI server with the portal endpoint, the ledger webhook and
the background work queue.
"""

import sys

from ess_bridge.api import run_server
from ess_bridge.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("Starting ESS Bridge...")
    print(f"FSP code: {settings.fsp_code}")
    print(f"Ledger: {settings.ledger_base_url}")
    print(f"API available at: http://localhost:{settings.api_port}")
    print(f"Documentation at: http://localhost:{settings.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down ESS Bridge...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

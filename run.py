#!/usr/bin/env python3
"""
Case Allocation Engine Entry Point

Starts the FastAPI server (port 8091 unless ALLOC_API_PORT says otherwise).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from allocation_engine.api import run_server
from allocation_engine.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("Starting Case Allocation Engine...")
    print(f"Storage: {settings.database_url}")
    print(f"Upload staging directory: {settings.staging_dir}")
    print(f"API available at: http://localhost:{settings.api_port}")
    print(f"Documentation at: http://localhost:{settings.api_port}/docs")
    print()

    try:
        run_server(debug=False)  # Set debug=True for auto-reload during development
    except KeyboardInterrupt:
        print("\nShutting down Case Allocation Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

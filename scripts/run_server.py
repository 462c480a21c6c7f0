#!/usr/bin/env python3
"""
Start the form approval API under uvicorn.
"""

import argparse
import sys
from pathlib import Path

import uvicorn

# Add the parent directory to sys.path to import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import DEBUG, validate_config


def main():
    parser = argparse.ArgumentParser(description="Run the form approval API")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    issues = validate_config()
    if issues:
        print("❌ Refusing to start with configuration issues:")
        for issue in issues:
            print(f"   - {issue}")
        sys.exit(1)

    uvicorn.run(
        "src.api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="debug" if DEBUG else "info",
    )


if __name__ == "__main__":
    main()

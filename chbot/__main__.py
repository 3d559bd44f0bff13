"""
Entry point for running chbot as a module

Usage:
    python -m chbot
    uv run -m chbot
"""

import sys

from .main import main

if __name__ == "__main__":
    sys.exit(main())

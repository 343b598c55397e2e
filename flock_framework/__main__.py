"""
Flock Coordination Framework - Entry Point

Allows running the CLI with 'python -m flock_framework'.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())

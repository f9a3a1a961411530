"""procutil entry point.

Supports: python -m procutil
"""

from .cli import main

if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Allow ``python -m cpanel_backup``."""

import sys

from .main import main

if __name__ == "__main__":
    sys.exit(main())

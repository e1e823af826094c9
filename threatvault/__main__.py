#!/usr/bin/env python3
"""Entry point for ThreatVault CLI."""

import sys
from threatvault.cli.main import main

if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""Local runner, configured from environment variables"""
import sys
from autobackup.cli import main

if __name__ == '__main__':
    # Same as `python -m autobackup`
    sys.exit(main())

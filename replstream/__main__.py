#!/usr/bin/env python3
"""
replstream CLI

This module allows replstream to be run as:
    python -m replstream

Or installed and run as:
    replstream
"""

from .cli import main

if __name__ == "__main__":
    main()

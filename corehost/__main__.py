#!/usr/bin/env python3
"""
Entry point for running Core Host as a module.

Usage:
    python -m corehost <command> [options]
"""

from .cli import main

if __name__ == "__main__":
    main()

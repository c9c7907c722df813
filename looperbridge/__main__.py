"""
Entry point for running looperbridge as a module.

Usage:
    python -m looperbridge [--config FILE] [directive ...]
"""

from looperbridge.cli import main

main()

"""
Entry point for running gsn-relay as a module.

Usage:
    python -m gsn_relay
"""

from gsn_relay.cli import main

if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Convenience wrapper to run a BoardLink node.

Usage: sudo python3 run.py --board-id <id> --iface <interface>

Or use the module directly:
    sudo python3 -m boardlink --board-id <id> --iface <interface>
"""

from boardlink.__main__ import main

if __name__ == "__main__":
    main()

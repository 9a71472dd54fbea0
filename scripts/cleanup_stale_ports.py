#!/usr/bin/env python3
"""
Release ASSIGNED port allocations no longer attached to a lab instance.
"""

import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cyberrange import create_app
from cyberrange.services import get_services


def main():
    app = create_app()

    with app.app_context():
        released = get_services().ports.release_stale()

    print(f"Stale port allocations cleaned: {released}")
    return 0


if __name__ == '__main__':
    sys.exit(main())

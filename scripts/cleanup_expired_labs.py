#!/usr/bin/env python3
"""
Stop expired lab instances and release their ports.

Meant for cron, e.g. every minute:
    * * * * * cd /opt/cyberrange && python scripts/cleanup_expired_labs.py

Exits non-zero when at least one instance could not be stopped.
"""

import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cyberrange import create_app
from cyberrange.services import get_services
from cyberrange.services.expiry_sweeper import sweep_expired_instances


def main():
    app = create_app()

    with app.app_context():
        result = sweep_expired_instances(get_services())

    print(f"Expired cleanup done. stopped={result['stopped']}, failed={result['failed']}")
    return 1 if result['failed'] else 0


if __name__ == '__main__':
    sys.exit(main())

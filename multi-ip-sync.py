#!/usr/bin/env python3

"""Run multi-ip-sync from a source checkout without installing it.

Puts `src/` on the import path so cron entries can call this script
directly, e.g. `*/10 * * * * /opt/multi-ip-sync/multi-ip-sync.py -c config.json`.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from multi_ip_sync.cli import main  # noqa: E402


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Lap Engine - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
This is the ONE executable entry point for the lap engine.

- Compatible with PM2 process management
- Can be stopped safely (SIGINT / SIGTERM stop at the next
  phase boundary; the session resumes with `run`)

============================================================
USAGE
============================================================
Direct execution:
    python app.py new --resource <ref> --pool-size 10 --funding 1.5
    python app.py run --session <ref>

With PM2:
    pm2 start app.py --interpreter python --name lap-engine -- run --session <ref>

Environment-based configuration:
    LAP_LEDGER_BACKEND=http LAP_SESSION_BACKEND=sql python app.py run --session <ref>

============================================================
"""

import sys

from lap_engine.cli import main


if __name__ == "__main__":
    sys.exit(main())

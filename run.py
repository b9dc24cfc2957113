#!/usr/bin/env python3
"""
Polymarket leader mirror - simple entry point.

Usage:
    python run.py run            # Run continuously (DRY_RUN honoured)
    python run.py run-once       # One selection + poll pass
    python run.py scores         # Score the monitored wallets
    python run.py status         # Persisted state summary
    python run.py check-config   # Validate the environment

Configuration is read from environment variables (see orchestrator/config.py).
"""

from orchestrator.cli import main


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""
Relay Gateway Entry Point
=========================

Starts the protocol-translating gateway in front of the local inference
engine. Normally launched detached by ``relayctl start gateway``.

USAGE:
    # Persisted port and model from ~/.relay_config
    python3 run_gateway.py

    # Explicit overrides
    python3 run_gateway.py --port 11435 --model llama3.2:3b

ENVIRONMENT VARIABLES:
    RELAY_CONFIG_FILE: persisted assignment file (default: ~/.relay_config)
    RELAY_BACKEND_URL: engine URL (default: http://127.0.0.1:11434)
    RELAY_LOG_LEVEL: logging level (default: INFO)
"""

import sys

from relay_core.gateway.server import main

if __name__ == "__main__":
    sys.exit(main())

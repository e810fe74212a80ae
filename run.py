#!/usr/bin/env python3
"""
Swarm External Secrets Smoke Tester

Run this script from the plugin repository root to build the plugin, start
a dev secret store, deploy a consuming service and verify delivery and
rotation of a secret.

Usage:
    python run.py                     # Vault, bare secret + service
    python run.py openbao             # OpenBao, stack deploy, scoped token
    python run.py vault --mode stack  # Vault via stack deploy
    python run.py vault,openbao       # Both scenarios, one after another
    python run.py -j results.json     # Output JSON results
    python run.py --github-actions    # GitHub Actions mode
"""

import sys
from swarm_smoke.cli import main

if __name__ == "__main__":
    sys.exit(main())

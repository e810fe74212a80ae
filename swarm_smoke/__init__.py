"""
Swarm External Secrets Smoke Tester.

An end-to-end harness that proves a Docker Swarm secrets driver can fetch
a value from a Vault or OpenBao dev server, deliver it to a running
service, and propagate a rotated value through its rotation loop.
"""

__version__ = "1.0.0"

from swarm_smoke.cli import main

__all__ = ["main", "__version__"]

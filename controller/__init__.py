"""Control service for a regtest bitcoind.

Design goals:
- Keep a cached, lock-guarded view of the daemon's tip and readiness.
- Funnel every block-producing RPC call through a single worker so the
  controller never races itself on the chain.
- Tell downstream systems about mined blocks without making callers wait.
"""

__version__ = "0.1.0"

"""MEV worker supervisor.

Keeps the trading worker running, records its output to a per-session log
artifact, and derives operational metrics from that log when the session
ends (or on demand via ``mev-supervisor extract``).
"""

__version__ = "0.1.0"

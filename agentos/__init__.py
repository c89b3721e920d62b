"""
AgentOS - Decentralized AI Agent Operating System

Runs AI agents and agent teams under verifiable DSID identities, gates
platform capabilities by trust tier, records operations on a hash-chained
ledger and lets creators sell agents on a marketplace.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]

"""
Ledger hardware-wallet signing provider for Ethereum JSON-RPC.

Wraps an upstream node connection and answers account and signing methods
with a Ledger device, so private keys never leave the hardware.
"""

__version__ = "0.1.0"

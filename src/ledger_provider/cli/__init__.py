"""Command line interface for the Ledger signing provider."""

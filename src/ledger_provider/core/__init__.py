"""Device session, signer and RPC provider."""

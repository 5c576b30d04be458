"""Minimal Nano ledger client: keys, blocks, RPC, proof-of-work and accounts."""

"""Enshrined relayers: validator-set attestations for cross-chain messages."""

__version__ = "0.1.0"

"""Attestation collection side.

The relayer polls the source ledger for `hyperlane_send` events, asks each
bonded validator's signing service to sign the canonical digest, packs the
signatures into a bitmap proof and hands it to the destination.
`scripts/run_relayer.py` drives `Relayer.run_forever`.
"""

"""
Descriptor wallet engine: derivation, sync, coin selection, transaction
building and PSBT handling.
"""

"""
EdgeCharge usage anchoring.

Signed metered usage, Merkle anchoring, escrow settlement and disputes.
"""

__version__ = "0.1.0"

"""
Core modules for EdgeCharge.

This package contains the hash-critical pieces shared by every component:
canonical record encoding, record signing, Merkle batching, dispute
verification and the cost engine.
"""

"""
aawallet Core Module

Core functionality for the wallet system including:
- Contract host and ABI plumbing (``vm``)
- Wallet contracts (``contracts``)
- Key handling and signature recovery
- Typed data digests
- Configuration and structured logging
"""

__all__ = []

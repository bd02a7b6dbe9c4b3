"""
AgroTrust - escrow reconciliation for a cooperative/buyer trade marketplace.

Buyer funds are held with the payment processor until inspection, then
released to the cooperative.
"""

try:
    from importlib.metadata import version

    __version__ = version("agrotrust-escrow")
except Exception:
    __version__ = "0.0.0"

__all__ = ["__version__"]

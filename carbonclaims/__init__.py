"""
Carbon Claims Marketplace Client

Reads claims and organisations from a carbon_marketplace ledger package,
decides who may vote on what, and submits signed actions.
"""

__version__ = "0.1.0"

"""
Credit Ledger

Credit balances, monthly subscription entitlements, usage caps and sale
splits for a course marketplace.
"""

__version__ = "1.0.0"

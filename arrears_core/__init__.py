"""
Arrears & Collections Core

Late fee ("mora") calculation and the automated collections workflow:
collection tiers, payment promises, payment agreements and optimistic
concurrency for every state change. All money math uses Decimal.
"""

__version__ = "1.0.0"

"""
Dealer portal API: lead marketplace with locks, purchases and Stripe checkout.
"""

__version__ = "0.1.0"

"""
Business logic: locks, purchases, pricing, payments and reconciliation.
"""

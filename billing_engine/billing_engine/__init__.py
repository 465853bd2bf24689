"""Billing state synchronization engine.

Consumes signed payment-provider events and reconciles them into the local
subscription and entitlement projections.
"""

__version__ = "0.4.0"

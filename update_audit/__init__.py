"""
Update Audit Core: capture and reconciliation of software update events.
"""

__version__ = "0.1.0"

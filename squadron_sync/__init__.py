"""
Squadron Sync - Reconcile directory accounts and squadron groups with the membership registry.

This package walks a registry snapshot, applies the account lifecycle
(suspend, archive, delete, reactivate) to a cloud directory and keeps each
squadron's derived groups in step with its membership.
"""

__version__ = "1.0.0"
__author__ = "Squadron Sync Team"

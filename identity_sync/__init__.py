"""
Identity Sync - Reconcile a corporate roster against downstream directories.

This package keeps an identity provider, business application user stores and
a content-sharing system in line with the people returned by a corporate
identity feed.
"""

__version__ = "1.0.0"
__author__ = "Identity Sync Team"

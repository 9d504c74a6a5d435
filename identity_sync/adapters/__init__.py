"""
Downstream directory adapters.
"""

from .base import (
    DirectoryAdapter, DirectoryAPIError, DirectoryAuthenticationError, RecordLookupError,
    GroupNotFoundError, RecordHandle, RestClient
)
from .identity_provider import IdentityProviderAdapter
from .business_app import BusinessAppAdapter
from .content_share import ContentShareAdapter

__all__ = [
    'DirectoryAdapter', 'DirectoryAPIError', 'DirectoryAuthenticationError', 'RecordLookupError',
    'GroupNotFoundError', 'RecordHandle', 'RestClient',
    'IdentityProviderAdapter', 'BusinessAppAdapter', 'ContentShareAdapter',
]

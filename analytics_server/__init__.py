"""Moderation analytics, caching and datastore monitoring services.

Exports for testing and module access.
"""

from analytics_server import lib, models

__version__ = '0.1.0'

__all__ = ['lib', 'models']

"""
SDK for Jump Guard.

Provides the resilient client for the text-generation endpoint.
"""

from .model_client import ResilientModelClient

__all__ = ["ResilientModelClient"]

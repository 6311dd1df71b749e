"""
PEHCHAAN API Module
===================

Flask REST API for the identity matching service.
"""

from .app import create_app

__all__ = [
    "create_app"
]

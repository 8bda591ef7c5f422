"""
API v2 endpoints.
"""

from . import deps
from . import generate
from . import status

__all__ = [
    'deps',
    'generate',
    'status',
]

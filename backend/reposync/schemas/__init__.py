"""
Schemas package for API request/response models.
"""

from .repository import *

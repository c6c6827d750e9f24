"""
ChronoHeal - Shared Library
===========================

Common utilities, schemas, and constants shared by the ChronoHeal services.
"""

__version__ = "0.1.0"
__author__ = "ChronoHeal Team"

"""
Aegis - security event monitoring and adaptive rate limiting.
"""

__version__ = "0.1.0"

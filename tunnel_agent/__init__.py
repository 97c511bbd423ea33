"""Tunnel Agent - reverse SSH tunnel with short-lived certificates.

Keeps an ssh process connected to a private datasource gateway using
certificates signed by the signing API and rotated before they expire.
"""

__version__ = "1.0.0"

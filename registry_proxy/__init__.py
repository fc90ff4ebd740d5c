"""
npm registry proxy.

Serves a fixed set of locally ingested package archives with registry
compatible metadata and relays every other request to the public registry,
so tests can verify that a package manager installed the local artifacts.
"""

__version__ = "0.1.0"

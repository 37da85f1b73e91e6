"""Vigil cryptographic modules."""

from vigil.crypto.engine import CryptoEngine
from vigil.crypto.formats import MAGIC, ContainerHeader, parse_header

__all__ = [
    "CryptoEngine",
    "MAGIC",
    "ContainerHeader",
    "parse_header",
]

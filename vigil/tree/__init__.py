"""Vigil credential tree modules."""

from vigil.tree.models import ROOT_DISPLAY_NAME, Entry, Group, is_valid_id
from vigil.tree.sync import CredentialTreeSynchronizer

__all__ = [
    "CredentialTreeSynchronizer",
    "Entry",
    "Group",
    "ROOT_DISPLAY_NAME",
    "is_valid_id",
]

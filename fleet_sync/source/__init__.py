"""The source module.

This module reads the desired state of applications out of git repositories
at a specific revision.
"""

from .reader import ManifestSourceReader, parse_documents

__all__ = [
    "ManifestSourceReader",
    "parse_documents",
]

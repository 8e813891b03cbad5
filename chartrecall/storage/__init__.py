"""
ChartRecall Storage Module

Object storage for document content.
"""

from chartrecall.storage.object_store import LocalObjectStore, ObjectStore, decode_content

__all__ = [
    "LocalObjectStore",
    "ObjectStore",
    "decode_content",
]

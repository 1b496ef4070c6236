"""Inverted-file image database with semantic filtering.

Key components:
- Database: inverted-file index of BoW vectors answering similarity queries
- LabelTable: semantic class weights consulted by the filter
- QueryResult: ranked (image id, score) pair
"""

from .database import Database, ImageEntry, InvertedList, QueryResult
from .semantic import (
    LabelInfo,
    LabelTable,
    SemanticFilterMode,
    agreement,
    dominant_labels,
)

__all__ = [
    # Database
    "Database",
    "ImageEntry",
    "InvertedList",
    "QueryResult",
    # Semantic filtering
    "LabelInfo",
    "LabelTable",
    "SemanticFilterMode",
    "agreement",
    "dominant_labels",
]

"""
Matching Rules Module
"""

from .matcher import Matcher, MatchType, RankedCandidate, RankedCandidates, eligible_documents
from .scorers import (
    TextSimilarity,
    ReferenceMatch,
    sequence_similarity,
    quotes_document_number,
    score_amount,
    score_counterparty,
    score_date,
)

__all__ = [
    "Matcher", "MatchType", "RankedCandidate", "RankedCandidates", "eligible_documents",
    "TextSimilarity", "ReferenceMatch", "sequence_similarity", "quotes_document_number",
    "score_amount", "score_counterparty", "score_date",
]

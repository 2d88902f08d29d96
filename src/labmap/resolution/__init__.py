"""Tiered label resolution.

Normalization, exact and fuzzy matching, semantic proposals, arbitration,
auto-learning and audit. The orchestrating TieredResolver lives in
``labmap.resolution.resolver``.
"""

from .normalize import detect_script, normalize_label, normalize_unit, sanitize_prompt_input
from .profiles import ANALYTE_PROFILE, UNIT_PROFILE, VocabularyProfile, get_profile
from .validation import (
    AnalyteCodeValidator,
    ProposalValidator,
    UcumSyntaxValidator,
    ValidationOutcome,
)

__all__ = [
    "detect_script",
    "normalize_label",
    "normalize_unit",
    "sanitize_prompt_input",
    "ANALYTE_PROFILE",
    "UNIT_PROFILE",
    "VocabularyProfile",
    "get_profile",
    "AnalyteCodeValidator",
    "ProposalValidator",
    "UcumSyntaxValidator",
    "ValidationOutcome",
]

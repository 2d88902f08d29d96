"""Shared enums for labmap models."""

from enum import Enum


class Vocabulary(str, Enum):
    """Controlled vocabularies served by the resolver."""

    ANALYTE = "analyte"
    UNIT = "unit"


class Tier(str, Enum):
    """Resolution tiers."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    SEMANTIC = "semantic"


class Decision(str, Enum):
    """Final outcome of resolving one label."""

    EXACT_MATCH = "EXACT_MATCH"
    FUZZY_MATCH = "FUZZY_MATCH"
    SEMANTIC_MATCH = "SEMANTIC_MATCH"
    AMBIGUOUS = "AMBIGUOUS"
    UNKNOWN_CODE = "UNKNOWN_CODE"
    NEW_CANDIDATE = "NEW_CANDIDATE"
    ABSTAIN = "ABSTAIN"
    CONFLICT = "CONFLICT"
    UNRESOLVED = "UNRESOLVED"


class SemanticVerdict(str, Enum):
    """Per-item verdict returned by the semantic tier."""

    MATCH = "MATCH"
    NEW = "NEW"
    ABSTAIN = "ABSTAIN"


class AliasSource(str, Enum):
    """How an alias entered the store."""

    SEED = "seed"
    MANUAL = "manual"
    FUZZY_CONFIRMED = "fuzzy-confirmed"
    AUTO_LEARNED = "auto-learned"


class ReviewStatus(str, Enum):
    """Review item lifecycle. Approved and rejected are terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class IssueType(str, Enum):
    """Why an item was routed to human review."""

    AMBIGUOUS = "ambiguous"
    UNKNOWN_CODE = "unknown_code"
    SYNTAX_INVALID = "syntax_invalid"
    NEW_CANDIDATE = "new_candidate"
    LOW_CONFIDENCE = "low_confidence"
    ALIAS_CONFLICT = "alias_conflict"
    UNRESOLVED = "unresolved"

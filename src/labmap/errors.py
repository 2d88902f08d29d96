"""Exception hierarchy for labmap.

Per-item resolution failures never raise; they surface as decisions.
These exceptions cover tier plumbing and the administrative review
operations, which fail loudly.
"""

from typing import Any


class LabmapError(Exception):
    """Base exception for labmap errors."""

    error_code = "labmap_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TierUnavailableError(LabmapError):
    """A similarity capability is missing (e.g. pg_trgm not installed)."""

    error_code = "tier_unavailable"


class SemanticResolverError(LabmapError):
    """A Tier C backend call failed.

    Attributes:
        reason: Failure class (timeout, network, rate_limited, server_error,
            malformed_output, backend_error)
        transient: Whether a single retry is allowed
    """

    error_code = "semantic_resolver_error"

    def __init__(
        self,
        reason: str,
        message: str | None = None,
        transient: bool = False,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message or reason, details)
        self.reason = reason
        self.transient = transient


class StoreUnavailableError(LabmapError):
    """The alias store or review queue could not be reached."""

    error_code = "store_unavailable"


class ReviewItemNotFoundError(LabmapError):
    """No review item exists with the given id."""

    error_code = "review_item_not_found"

    def __init__(self, item_id: Any):
        super().__init__(f"Review item {item_id} not found", {"item_id": str(item_id)})


class InvalidReviewTransitionError(LabmapError):
    """The review item is not pending."""

    error_code = "invalid_review_transition"

    def __init__(self, item_id: Any, status: str, action: str):
        super().__init__(
            f"Cannot {action} review item {item_id}: status is {status}",
            {"item_id": str(item_id), "status": status, "action": action},
        )


class ReviewNeedsCorrectionError(LabmapError):
    """The proposal failed validation and must be corrected first."""

    error_code = "review_needs_correction"

    def __init__(self, item_id: Any):
        super().__init__(
            f"Review item {item_id} has an invalid proposal; correct it before approving",
            {"item_id": str(item_id)},
        )


class ProposalInvalidError(LabmapError):
    """A reviewer-supplied proposal fails the vocabulary's validator."""

    error_code = "proposal_invalid"


class AliasConflictError(LabmapError):
    """An alias already points at a different canonical entry."""

    error_code = "alias_conflict"

    def __init__(self, vocabulary: str, key: str, existing_code: str, requested_code: str):
        super().__init__(
            f"Alias '{key}' ({vocabulary}) already maps to {existing_code}, not {requested_code}",
            {
                "vocabulary": vocabulary,
                "key": key,
                "existing_code": existing_code,
                "requested_code": requested_code,
            },
        )

"""Per-vocabulary behaviour of the shared resolution engine."""

from dataclasses import dataclass
from typing import Callable

from ..models import Vocabulary
from .normalize import normalize_label, normalize_unit
from .validation import AnalyteCodeValidator, ProposalValidator, UcumSyntaxValidator


@dataclass(frozen=True)
class VocabularyProfile:
    """How one vocabulary is keyed, validated and learned."""

    vocabulary: Vocabulary
    key_fn: Callable[[str | None], str | None]
    validator: ProposalValidator
    # Create canonical entries for validated NEW proposals without review
    learn_new_entries: bool
    # Units differ by a single character (mg vs ug), so edit distance is unsafe
    fuzzy_enabled: bool
    description: str

    def key(self, raw: str | None) -> str | None:
        return self.key_fn(raw)


ANALYTE_PROFILE = VocabularyProfile(
    vocabulary=Vocabulary.ANALYTE,
    key_fn=normalize_label,
    validator=AnalyteCodeValidator(),
    learn_new_entries=False,
    fuzzy_enabled=True,
    description=(
        "laboratory analyte (test parameter) names, possibly in Russian, "
        "Ukrainian, Hebrew or English, possibly misspelled by OCR"
    ),
)

UNIT_PROFILE = VocabularyProfile(
    vocabulary=Vocabulary.UNIT,
    key_fn=normalize_unit,
    validator=UcumSyntaxValidator(),
    learn_new_entries=True,
    fuzzy_enabled=False,
    description=(
        "units of measure from lab reports, to be expressed as case-sensitive "
        "UCUM codes (e.g. mmol/L, 10*9/L, u[IU]/mL)"
    ),
)

_PROFILES = {
    Vocabulary.ANALYTE: ANALYTE_PROFILE,
    Vocabulary.UNIT: UNIT_PROFILE,
}


def get_profile(vocabulary: Vocabulary | str) -> VocabularyProfile:
    """Get the profile for a vocabulary."""
    return _PROFILES[Vocabulary(vocabulary)]

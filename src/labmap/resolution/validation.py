"""Syntactic validation of proposed vocabulary entries.

New entries proposed by the semantic tier must pass their vocabulary's
validator before they can be learned. Validators only report problems;
they never rewrite the proposal. A suggested fix may be attached for the
reviewer, but adopting it is a human decision.
"""

import re
from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

MAX_UNIT_LENGTH = 64

_ATOM = re.compile(r"[A-Za-z]*\[[A-Za-z0-9_.\-]+\]|[A-Za-z%]+")
_EXPONENT = re.compile(r"[+-]?\d+")
_FACTOR = re.compile(r"\d+(?:\*[+-]?\d+)?")
_ANNOTATION = re.compile(r"\{[^{}]*\}")

_ANALYTE_CODE = re.compile(r"^[A-Z][A-Z0-9_-]{0,23}$")


class ValidationOutcome(BaseModel):
    """Result of validating one proposal."""

    valid: bool
    issues: list[str] = Field(default_factory=list)
    suggestion: str | None = None

    @classmethod
    def ok(cls) -> "ValidationOutcome":
        return cls(valid=True)


class _UcumSyntaxError(Exception):
    def __init__(self, position: int, expected: str):
        super().__init__(f"{expected} at position {position}")
        self.position = position
        self.expected = expected


class _UcumParser:
    """Recursive-descent recognizer for case-sensitive UCUM unit terms.

    Grammar (simplified):
        main      := "/" term | term
        term      := component (("." | "/") component)*
        component := "(" term ")" | annotation | factor annotation?
                   | atom exponent? annotation?
    """

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def parse(self) -> None:
        if self._peek() == "/":
            self.pos += 1
        self._term()
        if self.pos != len(self.text):
            raise _UcumSyntaxError(self.pos, "operator")

    def _term(self) -> None:
        self._component()
        while self._peek() in (".", "/"):
            self.pos += 1
            self._component()

    def _component(self) -> None:
        if self._peek() == "(":
            self.pos += 1
            self._term()
            if self._peek() != ")":
                raise _UcumSyntaxError(self.pos, "')'")
            self.pos += 1
            return

        if self._match(_ANNOTATION):
            return
        if self._match(_FACTOR):
            self._match(_ANNOTATION)
            return
        if self._match(_ATOM):
            self._match(_EXPONENT)
            self._match(_ANNOTATION)
            return

        raise _UcumSyntaxError(self.pos, "unit atom")

    def _peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _match(self, pattern: re.Pattern) -> bool:
        match = pattern.match(self.text, self.pos)
        if match is None:
            return False
        self.pos = match.end()
        return True


class ProposalValidator(ABC):
    """Validates a (code, name, unit) proposal for one vocabulary."""

    @abstractmethod
    def validate_proposal(
        self,
        code: str | None,
        name: str | None = None,
        unit: str | None = None,
    ) -> ValidationOutcome:
        ...


class UcumSyntaxValidator(ProposalValidator):
    """Checks that a unit string is well-formed UCUM.

    Common OCR and report notations are rejected with a named issue:
    caret exponents (``10^9/L``, UCUM writes ``10*9/L``), non-ASCII
    glyphs (``μg/L``, ``мг/л``) and embedded whitespace.
    """

    def validate(self, unit: str | None) -> ValidationOutcome:
        if unit is None or not unit.strip():
            return ValidationOutcome(valid=False, issues=["empty"])

        issues: list[str] = []
        if len(unit) > MAX_UNIT_LENGTH:
            issues.append("too_long")
        if "^" in unit:
            issues.append("caret_exponent")
        if not unit.isascii():
            issues.append("non_ascii")
        if any(ch.isspace() for ch in unit):
            issues.append("whitespace")

        if not issues:
            try:
                _UcumParser(unit).parse()
            except _UcumSyntaxError as e:
                issues.append(f"syntax_error:{e.position}")

        if not issues:
            return ValidationOutcome.ok()

        return ValidationOutcome(
            valid=False,
            issues=issues,
            suggestion=self._suggest(unit),
        )

    def validate_proposal(
        self,
        code: str | None,
        name: str | None = None,
        unit: str | None = None,
    ) -> ValidationOutcome:
        # For the unit vocabulary the canonical code is the UCUM string
        return self.validate(code)

    def _suggest(self, unit: str) -> str | None:
        """Propose a UCUM spelling for common notations, if one validates."""
        candidate = "".join(unit.split())
        candidate = candidate.replace("^", "*").replace("μ", "u").replace("µ", "u")
        candidate = re.sub(r"^[x×]\s*(?=10\*)", "", candidate)
        if candidate == unit or not candidate.isascii():
            return None
        try:
            _UcumParser(candidate).parse()
        except _UcumSyntaxError:
            return None
        return candidate


class AnalyteCodeValidator(ProposalValidator):
    """Checks a proposed analyte: code shape, display name, optional unit."""

    def __init__(self, unit_validator: UcumSyntaxValidator | None = None):
        self.unit_validator = unit_validator or UcumSyntaxValidator()

    def validate_proposal(
        self,
        code: str | None,
        name: str | None = None,
        unit: str | None = None,
    ) -> ValidationOutcome:
        issues: list[str] = []
        suggestion = None

        if not code or not _ANALYTE_CODE.match(code):
            issues.append("invalid_code")
            if code:
                upper = re.sub(r"[^A-Z0-9_-]", "", code.upper())
                if _ANALYTE_CODE.match(upper):
                    suggestion = upper
        if not name or not name.strip():
            issues.append("missing_name")
        if unit:
            unit_outcome = self.unit_validator.validate(unit)
            issues.extend(f"unit:{issue}" for issue in unit_outcome.issues)

        if issues:
            return ValidationOutcome(valid=False, issues=issues, suggestion=suggestion)
        return ValidationOutcome.ok()

"""Test fixtures for labmap tests.

Provides:
- Sample analyte and unit vocabularies
- A scriptable semantic backend
"""

from .semantic import FakeSemanticBackend
from .vocabularies import SAMPLE_ANALYTES, SAMPLE_UNITS

__all__ = ["FakeSemanticBackend", "SAMPLE_ANALYTES", "SAMPLE_UNITS"]

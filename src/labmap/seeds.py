"""Seed file loading."""

import json
from importlib import resources
from pathlib import Path

from pydantic import TypeAdapter

from .models import SeedEntry, Vocabulary

_BUILTIN_FILES = {
    Vocabulary.ANALYTE: "analytes.json",
    Vocabulary.UNIT: "units.json",
}

_SEED_LIST = TypeAdapter(list[SeedEntry])


def load_seed_file(path: str | Path) -> list[SeedEntry]:
    """Load seed entries from a JSON file (a list of entries)."""
    with open(path, encoding="utf-8") as f:
        return _SEED_LIST.validate_python(json.load(f))


def load_builtin_seed(vocabulary: Vocabulary | str) -> list[SeedEntry]:
    """Load the seed entries shipped with the package."""
    filename = _BUILTIN_FILES[Vocabulary(vocabulary)]
    text = resources.files("labmap.data").joinpath(filename).read_text(encoding="utf-8")
    return _SEED_LIST.validate_json(text)

# tests/conftest.py
# 共享夹具：小型内联画像目录 / Shared fixtures: a small inline persona catalog

from pathlib import Path

import pytest

from jurymatch.catalog.manager import PersonaCatalog

DEFAULT_CATALOG_DIR = Path(__file__).resolve().parents[1] / "catalogs" / "default"

CATALOG_DATA = {
    "name": "test",
    "version": "0.0.1",
    "signals": [
        {
            "id": "DISTRUSTS_CORPORATIONS",
            "name": "Distrusts Corporations",
            "category": "attitudinal",
            "value_type": "boolean",
            "patterns": [
                r"\bcorporations? (are|is) greedy\b",
                r"\bdistrust (big )?corporations\b",
            ],
        },
        {
            "id": "SERVED_ON_JURY",
            "name": "Prior Jury Service",
            "category": "behavioral",
            "value_type": "boolean",
            "source_field": "prior_jury_service",
            "patterns": [r"\bserved on a jury\b"],
        },
        {
            "id": "AGE",
            "name": "Age",
            "category": "demographic",
            "value_type": "numeric",
            "source_field": "age",
        },
        {
            "id": "EDUCATION",
            "name": "Education",
            "category": "demographic",
            "value_type": "categorical",
            "source_field": "education",
            "possible_values": ["high_school", "bachelors", "graduate"],
        },
        {
            "id": "OCCUPATION",
            "name": "Occupation",
            "category": "demographic",
            "value_type": "text",
            "source_field": "occupation",
        },
        {
            "id": "EMPATHY",
            "name": "Empathy",
            "category": "attitudinal",
            "value_type": "boolean",
            "patterns": [r"\bheart goes out\b"],
        },
    ],
    "personas": [
        {
            "id": "crusader",
            "name": "The Crusader",
            "archetype": "systemic_thinker",
            "description": "Distrusts corporations and fights for the little guy.",
            "weights": {
                "DISTRUSTS_CORPORATIONS": 0.8,
                "EMPATHY": 0.3,
                "AGE": {"weight": 0.3, "expected": 35, "tolerance": 10},
            },
        },
        {
            "id": "bootstrapper",
            "name": "The Bootstrapper",
            "archetype": "personal_responsibility",
            "description": "Believes people make their own luck and business creates jobs.",
            "weights": {
                "DISTRUSTS_CORPORATIONS": -0.8,
                "EDUCATION": {"weight": 0.4, "expected": "bachelors"},
            },
        },
        {
            "id": "captain",
            "name": "The Captain",
            "archetype": "authoritative_leader",
            "description": "Takes charge of the deliberation room.",
            "weights": {
                "SERVED_ON_JURY": 0.9,
                "AGE": {"weight": 0.4, "expected": 55, "tolerance": 10},
            },
        },
        {
            "id": "heart",
            "name": "The Heart",
            "archetype": "empathic_connector",
            "description": "Feels for the people behind the case.",
            "weights": {"EMPATHY": 0.9},
        },
    ],
}


@pytest.fixture
def catalog() -> PersonaCatalog:
    return PersonaCatalog.from_dict(CATALOG_DATA)


@pytest.fixture
def default_catalog_dir() -> Path:
    return DEFAULT_CATALOG_DIR

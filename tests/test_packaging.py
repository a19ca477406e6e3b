"""
Tests for the project metadata in pyproject.toml.

Covers:
- The declared Python floor covers the language features the code uses
"""

import sys
import tomllib
from pathlib import Path

PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def _project() -> dict:
    with PYPROJECT.open("rb") as f:
        return tomllib.load(f)["project"]


class TestPythonFloor:
    """typing.Self and datetime.UTC need Python 3.11."""

    def test_requires_python_is_at_least_3_11(self):
        assert _project()["requires-python"] == ">=3.11"

    def test_interpreter_meets_the_floor(self):
        assert sys.version_info >= (3, 11)

"""
Every package module compiles cleanly with warnings treated as errors
(invalid escape sequences in docstrings and strings included).
"""
import warnings
from pathlib import Path

import pytest

PACKAGE_ROOT = Path(__file__).resolve().parents[2] / "copytrade"
MODULES = sorted(PACKAGE_ROOT.rglob("*.py"))


@pytest.mark.parametrize("path", MODULES, ids=lambda p: str(p.relative_to(PACKAGE_ROOT)))
def test_module_compiles_without_warnings(path):
    source = path.read_text()
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(source, str(path), "exec")


def test_orchestrator_is_covered():
    assert PACKAGE_ROOT / "execution" / "bracket_orchestrator.py" in MODULES

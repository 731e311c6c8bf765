"""Code-generation collaborator used by the cycle phases.

Turning acceptance criteria into real test code and implementation code is
delegated to a generator. :class:`TemplateCodeGenerator` produces deterministic
placeholder text so that cycles can run without a model behind them.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Protocol


def generate_slug(text: str, max_length: int = 50) -> str:
    """Generate a kebab-case slug from free text."""
    slug = text.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:max_length].strip("-")


def unique_path(path: str, taken: set[str]) -> str:
    """Return ``path``, or ``<stem>_N<suffix>`` with the first free N >= 2."""
    candidate = path
    pure = PurePosixPath(path)
    suffix = 1
    while candidate in taken:
        suffix += 1
        candidate = str(pure.with_name(f"{pure.stem}_{suffix}{pure.suffix}"))
    return candidate


class CodeGenerator(Protocol):
    def test_name(self, criterion: str) -> str: ...

    def test_path(self, test_name: str) -> str: ...

    def test_code(self, criterion: str) -> str: ...

    def implementation_path(self, test_path: str) -> str: ...

    def implementation(self, test_name: str, test_code: str) -> str: ...

    def refactor(self, content: str) -> str: ...


class TemplateCodeGenerator:
    """Deterministic pytest-flavoured templates."""

    def test_name(self, criterion: str) -> str:
        return f"should {criterion.strip().lower()}"

    def test_path(self, test_name: str) -> str:
        slug = generate_slug(test_name).replace("-", "_") or "criterion"
        return f"tests/test_{slug}.py"

    def test_code(self, criterion: str) -> str:
        func_name = generate_slug(criterion).replace("-", "_") or "criterion"
        return (
            f"def test_{func_name}():\n"
            f'    """{criterion}"""\n'
            "    assert False, \"not implemented\"\n"
        )

    def implementation_path(self, test_path: str) -> str:
        stem = PurePosixPath(test_path).stem.removeprefix("test_") or "feature"
        return f"src/{stem}.py"

    def implementation(self, test_name: str, test_code: str) -> str:
        return (
            f"# Implementation for: {test_name}\n"
            "# Minimal code to make the test pass\n"
            "def implementation():\n"
            "    return True\n"
        )

    def refactor(self, content: str) -> str:
        return f"# Refactored version\n{content.rstrip()}\n"

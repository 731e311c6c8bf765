import shutil
from pathlib import Path

import pytest
import pytest_asyncio

from codehive.branches import GitBranchManager, run_git
from codehive.errors import BranchOperationError
from codehive.generation import TemplateCodeGenerator, generate_slug, unique_path

from conftest import write

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


async def _git(repo: Path, *args: str) -> str:
    code, stdout, stderr = await run_git(list(args), repo)
    assert code == 0, stderr
    return stdout.strip()


@pytest_asyncio.fixture
async def repo(project: Path) -> Path:
    await _git(project, "init", "--quiet")
    await _git(project, "symbolic-ref", "HEAD", "refs/heads/main")
    await _git(project, "config", "user.email", "dev@example.com")
    await _git(project, "config", "user.name", "Dev")
    await _git(project, "config", "commit.gpgsign", "false")
    write(project, "README.md", "# project\n")
    await _git(project, "add", "-A")
    await _git(project, "commit", "--quiet", "-m", "Initial commit")
    return project


@pytest.mark.parametrize(
    ("text", "slug"),
    [
        ("Add Login", "add-login"),
        ("  Fix: the *broken* parser!  ", "fix-the-broken-parser"),
        ("snake_case and   spaces", "snakecase-and-spaces"),
        ("---", ""),
    ],
)
def test_generate_slug(text: str, slug: str) -> None:
    assert generate_slug(text) == slug


def test_generate_slug_truncates() -> None:
    slug = generate_slug("word " * 30, max_length=12)
    assert slug == "word-word-wo"
    assert not slug.endswith("-")


def test_template_generator_paths() -> None:
    generator = TemplateCodeGenerator()

    name = generator.test_name("  User Can Log In ")

    assert name == "should user can log in"
    test_path = generator.test_path(name)
    assert test_path == "tests/test_should_user_can_log_in.py"
    assert generator.implementation_path(test_path) == "src/should_user_can_log_in.py"
    assert generator.implementation_path("tests/test_a_2.py") == "src/a_2.py"
    assert generator.refactor("x = 1\n\n").startswith("# Refactored version\nx = 1\n")


def test_unique_path_adds_first_free_suffix() -> None:
    assert unique_path("tests/test_a.py", set()) == "tests/test_a.py"
    taken = {"tests/test_a.py", "tests/test_a_2.py"}
    assert unique_path("tests/test_a.py", taken) == "tests/test_a_3.py"


@requires_git
@pytest.mark.asyncio
async def test_create_feature_branch_adds_suffix_when_taken(repo: Path) -> None:
    manager = GitBranchManager(repo)

    first = await manager.create_feature_branch("Add login")
    second = await manager.create_feature_branch("Add login")

    assert first == "feature/add-login"
    assert second == "feature/add-login-2"
    assert await manager.current_branch() == "feature/add-login-2"
    assert await manager.branch_exists("feature/add-login")


@requires_git
@pytest.mark.asyncio
async def test_commit_changes(repo: Path) -> None:
    manager = GitBranchManager(repo)
    await manager.create_feature_branch("Checkout")
    write(repo, "src/checkout.py", "def checkout():\n    return True\n")

    await manager.commit_changes("Complete TDD cycle: Checkout")

    assert await _git(repo, "log", "-1", "--format=%s") == "Complete TDD cycle: Checkout"
    assert await _git(repo, "status", "--porcelain") == ""

    await manager.commit_changes("Nothing new")
    assert await _git(repo, "log", "-1", "--format=%s") == "Complete TDD cycle: Checkout"


@requires_git
@pytest.mark.asyncio
async def test_switch_branch(repo: Path) -> None:
    manager = GitBranchManager(repo)
    await manager.create_feature_branch("Search")

    await manager.switch_branch("main")
    assert await manager.current_branch() == "main"

    with pytest.raises(BranchOperationError):
        await manager.switch_branch("feature/missing")

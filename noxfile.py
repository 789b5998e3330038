"""Nox sessions for the tournament sync handlers."""

import nox

nox.options.sessions = ["tests", "lint"]
python_versions = ["3.11", "3.12"]
lint_paths = ["tournament_sync", "scripts", "tests", "noxfile.py"]


@nox.session(python=python_versions)
def tests(session):
    """Run the test suite with coverage of the handler package."""
    session.install("-e", ".[dev]")
    session.run(
        "pytest",
        "--cov=tournament_sync",
        "--cov-report=term-missing",
        "--cov-report=xml:coverage.xml",
        "--cov-fail-under=80",
        *session.posargs,
    )


@nox.session(python=python_versions[0])
def lint(session):
    session.install("ruff>=0.1.0")
    session.run("ruff", "check", *lint_paths)
    session.run("ruff", "format", "--check", *lint_paths)


@nox.session(python=python_versions[0])
def format_code(session):
    """Format code with ruff."""
    session.install("ruff>=0.1.0")
    session.run("ruff", "format", *lint_paths)
    session.run("ruff", "check", "--fix", *lint_paths)


@nox.session(python=python_versions[0])
def coverage_report(session):
    """Generate an HTML branch-coverage report in htmlcov/."""
    session.install("-e", ".[dev]")
    session.run(
        "pytest",
        "--cov=tournament_sync",
        "--cov-branch",
        "--cov-report=html:htmlcov",
        "--tb=short",
    )

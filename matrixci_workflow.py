# matrixci_workflow.py
# Workflow for matrixci itself: tests across interpreters, lint and format checks
from __future__ import annotations

from matrixci.dsl import job, on, sh, uses, wf

SOURCES = ["src/**", "tests/**", "pyproject.toml"]


def workflow():
    return wf(
        "matrixci",
        job(
            "lint",
            uses("actions/checkout@v4"),
            sh("ruff check .", name="Ruff check"),
            sh("ruff format --check .", name="Ruff format check"),
            runs_on="ubuntu-latest",
        ),

        # One instance per interpreter
        job(
            "test",
            uses("actions/checkout@v4"),
            sh("python${{ matrix.python }} -m pip install -e '.[test]'", name="Install package"),
            sh("python${{ matrix.python }} -m pytest -q", name="Run pytest"),
            name="test (py${{ matrix.python }})",
            matrix={"python": ["3.9", "3.10", "3.11", "3.12"]},
            runs_on="ubuntu-latest",
            needs=["lint"],
            timeout=15 * 60,
        ),
        on=[
            on("push", branches=["main", "release/**"], paths=SOURCES),
            on("pull_request", paths=SOURCES, paths_ignore=["**/*.md"]),
            "workflow_dispatch",
        ],
        env={"PYTHONDONTWRITEBYTECODE": "1"},
    )

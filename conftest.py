"""Root pytest configuration: executes the Python blocks of docs/*.md."""

from os import chdir
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

import numpy as np
from sybil import Sybil
from sybil.parsers.markdown import PythonCodeBlockParser, SkipParser

import lwr_adjoint

DOCS_DIR = Path(__file__).parent / "docs"


def documentation_setup(namespace: dict[str, Any]) -> None:
    """Run each document in a scratch directory with common names preloaded."""
    directory = Path(TemporaryDirectory().name)
    directory.mkdir(parents=True, exist_ok=True)
    chdir(directory)
    namespace["np"] = np
    namespace["lwr_adjoint"] = lwr_adjoint


pytest_collect_file = Sybil(
    parsers=[
        PythonCodeBlockParser(),
        SkipParser(),
    ],
    path=str(DOCS_DIR),
    pattern="**/*.md",
    setup=documentation_setup,
).pytest()

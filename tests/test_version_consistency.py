"""Ensure package, server and pyproject versions stay in sync."""

from pathlib import Path
import tomllib

import whispo
from whispo.mcp.http import create_app
from whispo.runtime import WhispoRuntime
from whispo.version import __version__


def test_version_single_source_of_truth():
    pyproject_path = Path(__file__).resolve().parents[1] / "pyproject.toml"
    with pyproject_path.open("rb") as f:
        pyproject = tomllib.load(f)

    runtime = WhispoRuntime()
    assert pyproject["project"]["version"] == __version__
    assert whispo.__version__ == __version__
    assert runtime.app.version == __version__
    assert create_app(runtime.session, runtime.state).version == __version__

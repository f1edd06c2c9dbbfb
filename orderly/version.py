from functools import lru_cache
from importlib import metadata
from pathlib import Path

import tomli

DISTRIBUTION = "orderly"
PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


@lru_cache(maxsize=None)
def get_version() -> str:
    """
    Version of the running orderly package.

    A source checkout reads ``pyproject.toml``; an installed wheel has none
    beside the package, so the installed distribution metadata answers.
    Returns "unknown" when neither is available.
    """
    version = _pyproject_version(PYPROJECT)
    if version is not None:
        return version
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return "unknown"


def _pyproject_version(path: Path):
    if not path.is_file():
        return None
    with open(path, "rb") as f:
        project = tomli.load(f).get("project", {})
    if project.get("name") != DISTRIBUTION:
        return None
    return project.get("version")

"""
Canonical path resolution for the risk surface project.

Scripts import their directories from here instead of building relative
'../' paths. The project root is detected via `.project-root` (primary) or
fallback markers, searched upward from this file and then from the current
working directory.
"""

from pathlib import Path
from typing import Optional

# Markers to detect project root (in priority order)
ROOT_MARKERS = [".project-root", "pyproject.toml", ".git"]


def _search_upward(start_path: Path) -> Optional[Path]:
    current = start_path
    while True:
        for marker in ROOT_MARKERS:
            if (current / marker).exists():
                return current
        if current == current.parent:
            return None
        current = current.parent


def find_project_root(start_path: Optional[Path] = None) -> Path:
    """
    Find the project root by searching upward for marker files.

    Args:
        start_path: Starting directory for search. Defaults to this file's
            location, then the current working directory.

    Returns:
        Path to project root directory.

    Raises:
        FileNotFoundError: If no root marker is found.
    """
    if start_path is not None:
        candidates = [Path(start_path).resolve()]
    else:
        candidates = [Path(__file__).resolve().parent, Path.cwd().resolve()]

    for candidate in candidates:
        root = _search_upward(candidate)
        if root is not None:
            return root

    raise FileNotFoundError(
        f"Could not find project root. Searched for markers {ROOT_MARKERS} "
        f"starting from {candidates}"
    )


# =============================================================================
# Canonical paths (resolved at import time)
# =============================================================================

PROJECT_ROOT = find_project_root()

CONFIG_DIR = PROJECT_ROOT / "configs"
DEFAULT_PARAMS = CONFIG_DIR / "params.yml"

# Data directories
DATA_DIR = PROJECT_ROOT / "data"
RAW_DIR = DATA_DIR / "raw"
PROCESSED_DIR = DATA_DIR / "processed"
RISK_DIR = PROCESSED_DIR / "risk"

# Logs
LOGS_DIR = PROJECT_ROOT / "logs"


def ensure_dirs_exist() -> None:
    """Create the writable canonical directories if they don't exist."""
    for d in [RAW_DIR, RISK_DIR, LOGS_DIR]:
        d.mkdir(parents=True, exist_ok=True)

"""Small filesystem and time helpers."""

import time
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) if missing; return it."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the storymem data directory (~/.storymem)."""
    return ensure_dir(Path.home() / ".storymem")


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)

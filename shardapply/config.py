"""Shared constants and the run configuration."""

import os
import select
from dataclasses import dataclass, field, fields
from typing import List, Optional

# ---------------------------------------------------------------------------
# Configuration constants
DEFAULT_PARTS = 10
DEFAULT_BACKEND = "process"
BACKENDS = ("process", "thread")
PIPE_CHUNK = getattr(select, "PIPE_BUF", 512)  # POSIX guarantees at least 512
SENTINEL = b"\0"
INDEX_SEPARATOR = "\t"
PROGRESS_FORMAT = "{name}\t{offset}\t{length}\t{status}"

# Environment overrides (only consulted by ``ApplyConfig.from_env``).
ENV_PARTS = "SHARDAPPLY_PARTS"
ENV_WORKERS = "SHARDAPPLY_WORKERS"
ENV_BACKEND = "SHARDAPPLY_BACKEND"
ENV_LOG_LEVEL = "SHARDAPPLY_LOG_LEVEL"


# Number of workers to use when nothing else is specified.
def default_workers() -> int:
    return max(1, os.cpu_count() or 1)


# ---------------------------------------------------------------------------
# Data structures
@dataclass
class ApplyConfig:
    """Everything one ``apply_archive`` run needs.

    * ``data_path`` / ``index_path`` - the source archive.
    * ``out_data`` / ``out_index`` - base names of the output archive, both
      ``None`` when output capture is disabled.
    * ``program`` / ``argv`` - the executable and its full argument vector
      (``argv[0]`` is the program name as given).
    * ``parts`` - target number of chunks per worker.
    """

    data_path: str
    index_path: str
    program: str
    argv: List[str] = field(default_factory=list)
    out_data: Optional[str] = None
    out_index: Optional[str] = None
    parts: int = DEFAULT_PARTS
    workers: int = field(default_factory=default_workers)
    backend: str = DEFAULT_BACKEND
    keep_intermediate: bool = False
    sort_index: bool = False
    quiet: bool = False
    strict: bool = False

    def __post_init__(self):
        if not self.argv:
            self.argv = [self.program]

    @property
    def capture(self) -> bool:
        return (self.out_data is not None) and (self.out_index is not None)

    # Raise a ValueError describing the first invalid setting.
    def validate(self) -> "ApplyConfig":
        if (self.out_data is None) != (self.out_index is None):
            raise ValueError("Output data and index names must be given together (or both omitted).")
        if int(self.parts) < 1:
            raise ValueError(f"parts must be a positive integer, got {self.parts!r}")
        if int(self.workers) < 1:
            raise ValueError(f"workers must be a positive integer, got {self.workers!r}")
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if not self.program:
            raise ValueError("No program given.")
        return self

    # Build a configuration, filling unset tunables from the environment.
    @classmethod
    def from_env(cls, **kwargs) -> "ApplyConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(kwargs) - known
        if unknown:
            raise TypeError(f"Unknown configuration fields {sorted(unknown)}")
        env = os.environ
        if kwargs.get("parts") is None:
            kwargs["parts"] = int(env.get(ENV_PARTS, DEFAULT_PARTS))
        if kwargs.get("workers") is None:
            kwargs["workers"] = int(env.get(ENV_WORKERS, default_workers()))
        if kwargs.get("backend") is None:
            kwargs["backend"] = env.get(ENV_BACKEND, DEFAULT_BACKEND)
        return cls(**kwargs)

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple


@dataclass(frozen=True)
class Settings:
    home: Path
    max_parallel: Optional[int]
    artifact_retention: float
    history_url: str
    history_retention: float
    protected_branches: Tuple[str, ...]
    kill_grace: float

    @property
    def artifact_dir(self) -> Path:
        return self.home / "artifacts"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ

    home = Path(env.get("CIFLOW_HOME", ".ciflow"))
    max_parallel = env.get("CIFLOW_MAX_PARALLEL")
    branches = env.get("CIFLOW_PROTECTED_BRANCHES", "main")

    return Settings(
        home=home,
        max_parallel=int(max_parallel) if max_parallel else None,
        artifact_retention=float(env.get("CIFLOW_ARTIFACT_RETENTION", "86400")),
        history_url=env.get("CIFLOW_HISTORY_URL", f"sqlite:///{(home / 'history.db').as_posix()}"),
        history_retention=float(env.get("CIFLOW_HISTORY_RETENTION", str(30 * 86400))),
        protected_branches=tuple(b.strip() for b in branches.split(",") if b.strip()),
        kill_grace=float(env.get("CIFLOW_KILL_GRACE", "10")),
    )

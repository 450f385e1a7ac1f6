# artifacts.py
from __future__ import annotations

import glob
import hashlib
import io
import json
import os
import re
import shutil
import tarfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .errors import ArtifactNotFound, DuplicateArtifact

# ---------------------------------------------------------------------
# Run-scoped artifact store
# ---------------------------------------------------------------------
# Keyed by (run_id, name). One writer per key; readers must transitively
# need the producing job. Payloads live in memory, or under
#   root/
#     <run_id>/
#       <name>.bin
#       <name>.manifest.json
#       run.json          (expiry, written on completion)
# when a root directory is configured.
# After a run completes its artifacts stay readable for `retention`
# seconds, then reclaim() drops them. On disk the expiry is recorded in
# run.json so a later process sharing the root can reclaim the directory.
# ---------------------------------------------------------------------

RUN_META = "run.json"

DEFAULT_ARTIFACT_EXCLUDES = [
    ".git/**",
    ".ciflow/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class Artifact:
    run_id: str
    name: str
    producer: str
    size: int
    sha256: str
    created_at: float
    manifest: Dict = field(default_factory=dict)


@dataclass
class _RunEntry:
    ancestry: Dict[str, Set[str]] = field(default_factory=dict)
    artifacts: Dict[str, Artifact] = field(default_factory=dict)
    blobs: Dict[str, bytes] = field(default_factory=dict)
    expires_at: Optional[float] = None


class ArtifactStore:
    def __init__(
        self,
        root: str | Path | None = None,
        *,
        retention: float = 86400.0,
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root).resolve() if root is not None else None
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
        self.retention = retention
        self._clock = clock
        self._lock = threading.Lock()
        self._runs: Dict[str, _RunEntry] = {}

    # ---- paths ----

    def _run_dir(self, run_id: str) -> Path:
        assert self.root is not None
        return self.root / _SAFE_NAME.sub("_", run_id)

    def _blob_path(self, run_id: str, name: str) -> Path:
        return self._run_dir(run_id) / f"{_SAFE_NAME.sub('_', name)}.bin"

    # ---- lifecycle ----

    def register_run(self, run_id: str, ancestry: Mapping[str, Iterable[str]]) -> None:
        """Record which jobs each job transitively needs, for read checks."""
        with self._lock:
            entry = self._runs.setdefault(run_id, _RunEntry())
            entry.ancestry = {k: set(v) for k, v in ancestry.items()}

    def complete_run(self, run_id: str, at: float | None = None) -> None:
        """Start the retention grace period for a finished run."""
        with self._lock:
            entry = self._runs.get(run_id)
            if entry is None:
                return
            entry.expires_at = (self._clock() if at is None else at) + self.retention
            expires_at = entry.expires_at
        if self.root is not None:
            run_dir = self._run_dir(run_id)
            if run_dir.is_dir():
                (run_dir / RUN_META).write_text(json.dumps({"run_id": run_id, "expires_at": expires_at}))

    def reclaim(self, now: float | None = None) -> List[str]:
        """Drop every run whose grace period has passed. Returns the reclaimed run ids."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [rid for rid, e in self._runs.items() if e.expires_at is not None and e.expires_at <= now]
            for rid in expired:
                del self._runs[rid]
        if self.root is None:
            return expired
        for rid in expired:
            shutil.rmtree(self._run_dir(rid), ignore_errors=True)
        with self._lock:
            live = {self._run_dir(rid) for rid in self._runs}
        for run_id, run_dir in self._expired_on_disk(now):
            if run_dir in live:
                continue
            shutil.rmtree(run_dir, ignore_errors=True)
            if run_id not in expired:
                expired.append(run_id)
        return expired

    def _expired_on_disk(self, now: float) -> List[Tuple[str, Path]]:
        """Run directories left by other processes whose recorded expiry has passed."""
        if self.root is None or not self.root.is_dir():
            return []
        found = []
        for run_dir in sorted(self.root.iterdir()):
            meta = run_dir / RUN_META
            if not meta.is_file():
                continue
            try:
                data = json.loads(meta.read_text())
                expires_at = float(data["expires_at"])
            except (OSError, ValueError, KeyError, TypeError):
                continue
            if expires_at <= now:
                found.append((str(data.get("run_id") or run_dir.name), run_dir))
        return found

    # ---- put / get ----

    def put(
        self,
        run_id: str,
        name: str,
        payload: bytes,
        *,
        producer: str,
        manifest: Optional[Dict] = None,
    ) -> Artifact:
        """
        Store `payload` under (run_id, name).

        Raises DuplicateArtifact if the name was already written in this run.
        The payload is fully written before the artifact becomes visible.
        """
        art = Artifact(
            run_id=run_id,
            name=name,
            producer=producer,
            size=len(payload),
            sha256=hashlib.sha256(payload).hexdigest(),
            created_at=self._clock(),
            manifest=dict(manifest or {}),
        )
        with self._lock:
            entry = self._runs.setdefault(run_id, _RunEntry())
            existing = entry.artifacts.get(name)
            if existing is not None:
                raise DuplicateArtifact(run_id, name, existing.producer)

            if self.root is None:
                entry.blobs[name] = bytes(payload)
            else:
                path = self._blob_path(run_id, name)
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp = path.with_suffix(".tmp")
                tmp.write_bytes(payload)
                tmp.replace(path)
                path.with_suffix(".manifest.json").write_text(
                    json.dumps(art.manifest, sort_keys=True, indent=2, ensure_ascii=False), encoding="utf-8"
                )
            entry.artifacts[name] = art
        return art

    def _visible(self, run_id: str, name: str, reader: str | None) -> Tuple[_RunEntry, Artifact]:
        entry = self._runs.get(run_id)
        if entry is None:
            raise ArtifactNotFound(run_id, name)
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            raise ArtifactNotFound(run_id, name, "expired")
        art = entry.artifacts.get(name)
        if art is None:
            raise ArtifactNotFound(run_id, name)
        if reader is not None and reader != art.producer:
            upstream = entry.ancestry.get(reader)
            if upstream is None or art.producer not in upstream:
                raise ArtifactNotFound(
                    run_id, name, f"is not visible to job '{reader}' (it does not need '{art.producer}')"
                )
        return entry, art

    def get(self, run_id: str, name: str, *, reader: str | None = None) -> bytes:
        """
        Read an artifact. `reader` is the consuming job; None means post-run
        inspection, which skips the dependency check.
        """
        with self._lock:
            entry, _art = self._visible(run_id, name, reader)
            if self.root is None:
                return entry.blobs[name]
            path = self._blob_path(run_id, name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise ArtifactNotFound(run_id, name, "payload missing on disk")

    def info(self, run_id: str, name: str, *, reader: str | None = None) -> Artifact:
        with self._lock:
            _entry, art = self._visible(run_id, name, reader)
            return art

    def list(self, run_id: str) -> List[Artifact]:
        with self._lock:
            entry = self._runs.get(run_id)
            if entry is None:
                return []
            return sorted(entry.artifacts.values(), key=lambda a: a.name)


# ---------------------------------------------------------------------
# File-set payloads (tar.gz + manifest)
# ---------------------------------------------------------------------

def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _expand(pattern: str, workspace: Path) -> List[Path]:
    pat = os.path.expanduser(pattern.strip())
    if not pat:
        return []
    if not os.path.isabs(pat):
        pat = str(workspace / pat)
    out: List[Path] = []
    for m in sorted(glob.glob(pat, recursive=True)):
        p = Path(m)
        if p.is_file():
            out.append(p)
        elif p.is_dir():
            out.extend(sorted(f for f in p.rglob("*") if f.is_file()))
    return out


def resolve_files(workspace: str | Path, patterns: Iterable[str]) -> List[Path]:
    """Expand file patterns (files, dirs, globs, ~) into a de-duplicated file list."""
    root = Path(workspace).resolve()
    seen: Set[str] = set()
    uniq: List[Path] = []
    for pat in patterns:
        for p in _expand(pat, root):
            rp = str(p.resolve())
            if rp not in seen:
                seen.add(rp)
                uniq.append(p.resolve())
    return uniq


def pack_files(
    workspace: str | Path,
    patterns: Iterable[str],
    *,
    excludes: Optional[List[str]] = None,
) -> Tuple[bytes, Dict]:
    """
    Pack matched files into tar.gz bytes.

    Paths inside the archive are relative to the deepest directory common to
    every matched file, so `~/.cargo/bin/tool*` round-trips into any target dir.
    """
    exclude_globs = list(DEFAULT_ARTIFACT_EXCLUDES) + list(excludes or [])
    files = resolve_files(workspace, patterns)
    if not files:
        return b"", {"files": [], "patterns": list(patterns)}

    base = Path(os.path.commonpath([str(f.parent) for f in files]))
    entries: List[Dict] = []
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for f in files:
            rel = f.relative_to(base).as_posix()
            if _matches_any_glob(rel, exclude_globs):
                continue
            tar.add(str(f), arcname=rel, recursive=False)
            entries.append({"path": rel, "size": f.stat().st_size, "mode": f.stat().st_mode & 0o777})
    manifest = {"files": entries, "patterns": list(patterns), "generated_at_unix": int(time.time())}
    return buf.getvalue(), manifest


def unpack_files(payload: bytes, dest: str | Path) -> List[str]:
    """Extract a pack_files() payload into dest. Returns extracted relative paths."""
    target = Path(dest).expanduser().resolve()
    target.mkdir(parents=True, exist_ok=True)
    if not payload:
        return []
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
        names = [m.name for m in tar.getmembers() if m.isfile()]
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(target), filter="data")
        else:
            tar.extractall(path=str(target))
    return names

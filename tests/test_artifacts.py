from __future__ import annotations

import pytest

from ciflow.artifacts import ArtifactStore, pack_files, resolve_files, unpack_files
from ciflow.errors import ArtifactNotFound, DuplicateArtifact

ANCESTRY = {"build": set(), "test": {"build"}, "deploy": {"build", "test"}, "lint": set()}


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(params=["memory", "disk"])
def store(request, tmp_path):
    root = tmp_path / "artifacts" if request.param == "disk" else None
    s = ArtifactStore(root, retention=60.0, clock=FakeClock())
    s.register_run("r1", ANCESTRY)
    return s


def test_descendant_reads_what_producer_wrote(store):
    store.put("r1", "wheel", b"payload", producer="build")
    assert store.get("r1", "wheel", reader="test") == b"payload"
    assert store.get("r1", "wheel", reader="deploy") == b"payload"
    assert store.get("r1", "wheel", reader="build") == b"payload"


def test_unrelated_job_cannot_read(store):
    store.put("r1", "wheel", b"payload", producer="build")
    with pytest.raises(ArtifactNotFound) as exc:
        store.get("r1", "wheel", reader="lint")
    assert "lint" in exc.value.message


def test_missing_artifact_and_unknown_run(store):
    with pytest.raises(ArtifactNotFound):
        store.get("r1", "nope", reader="test")
    with pytest.raises(ArtifactNotFound):
        store.get("other-run", "wheel")


def test_second_write_of_same_name_is_rejected(store):
    store.put("r1", "wheel", b"one", producer="build")
    with pytest.raises(DuplicateArtifact) as exc:
        store.put("r1", "wheel", b"two", producer="test")
    assert "build" in exc.value.message
    assert store.get("r1", "wheel") == b"one"


def test_names_are_scoped_per_run(store):
    store.register_run("r2", ANCESTRY)
    store.put("r1", "wheel", b"one", producer="build")
    store.put("r2", "wheel", b"two", producer="build")
    assert store.get("r2", "wheel", reader="test") == b"two"


def test_info_and_list(store):
    art = store.put("r1", "wheel", b"abc", producer="build", manifest={"files": []})
    assert art.size == 3
    assert store.info("r1", "wheel").sha256 == art.sha256
    assert [a.name for a in store.list("r1")] == ["wheel"]
    assert store.list("unknown") == []


def test_retention_then_reclaim(tmp_path):
    clock = FakeClock()
    store = ArtifactStore(tmp_path / "a", retention=60.0, clock=clock)
    store.register_run("r1", ANCESTRY)
    store.put("r1", "wheel", b"x", producer="build")
    store.complete_run("r1")

    clock.now += 30
    assert store.reclaim() == []
    assert store.get("r1", "wheel", reader="test") == b"x"

    clock.now += 31
    with pytest.raises(ArtifactNotFound):
        store.get("r1", "wheel", reader="test")
    assert store.reclaim() == ["r1"]
    assert not (tmp_path / "a" / "r1").exists()


def test_unfinished_runs_are_never_reclaimed(store):
    store.put("r1", "wheel", b"x", producer="build")
    assert store.reclaim(now=10 ** 12) == []


def test_expired_runs_from_an_earlier_process_are_reclaimed(tmp_path):
    root = tmp_path / "a"
    first = ArtifactStore(root, retention=60.0, clock=FakeClock(1000.0))
    first.register_run("old", ANCESTRY)
    first.put("old", "wheel", b"x", producer="build")
    first.complete_run("old")
    assert (root / "old" / "run.json").is_file()

    later = ArtifactStore(root, retention=60.0, clock=FakeClock(1030.0))
    assert later.reclaim() == []
    assert (root / "old").is_dir()

    later = ArtifactStore(root, retention=60.0, clock=FakeClock(1061.0))
    later.register_run("new", ANCESTRY)
    later.put("new", "wheel", b"y", producer="build")
    assert later.reclaim() == ["old"]
    assert not (root / "old").exists()
    assert later.get("new", "wheel") == b"y"


def test_unfinished_run_dirs_on_disk_are_left_alone(tmp_path):
    root = tmp_path / "a"
    first = ArtifactStore(root, retention=60.0, clock=FakeClock())
    first.register_run("running", ANCESTRY)
    first.put("running", "wheel", b"x", producer="build")

    later = ArtifactStore(root, retention=60.0, clock=FakeClock(10 ** 9))
    assert later.reclaim() == []
    assert (root / "running" / "wheel.bin").is_file()


def test_pack_and_unpack_file_sets(tmp_path):
    src = tmp_path / "src"
    (src / "dist").mkdir(parents=True)
    (src / "dist" / "app-1.0.whl").write_bytes(b"wheel")
    (src / "dist" / "notes.txt").write_text("hi")
    (src / "dist" / "__pycache__").mkdir()
    (src / "dist" / "__pycache__" / "x.pyc").write_bytes(b"\0")

    payload, manifest = pack_files(src, ["dist/"])
    paths = sorted(f["path"] for f in manifest["files"])
    assert paths == ["app-1.0.whl", "notes.txt"]

    out = tmp_path / "out"
    names = unpack_files(payload, out)
    assert sorted(names) == paths
    assert (out / "app-1.0.whl").read_bytes() == b"wheel"


def test_pack_with_no_matches_is_empty(tmp_path):
    payload, manifest = pack_files(tmp_path, ["missing/*.whl"])
    assert payload == b""
    assert manifest["files"] == []
    assert unpack_files(payload, tmp_path / "out") == []


def test_resolve_files_dedupes(tmp_path):
    (tmp_path / "a.txt").write_text("a")
    files = resolve_files(tmp_path, ["a.txt", "*.txt"])
    assert files == [(tmp_path / "a.txt").resolve()]

"""Tests for prefill and debug artifact persistence."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from consensus_extractor.contracts import Sample
from consensus_extractor.storage import ArtifactStore, PersistenceError

_FIXED_TIME = datetime(2025, 6, 7, 8, 9, 10, tzinfo=timezone.utc)


@pytest.fixture(name="store")
def fixture_store(tmp_path: Path) -> ArtifactStore:
    seed = tmp_path / "seed.txt"
    seed.write_text("Seed fragment", encoding="utf-8")
    return ArtifactStore(output_dir=tmp_path / "out", seed_path=seed, clock=lambda: _FIXED_TIME)


def test_save_prefill_never_overwrites(store: ArtifactStore) -> None:
    first = store.save_prefill("first buffer")
    second = store.save_prefill("second buffer")

    assert first.name == "prefill_20250607T080910.txt"
    assert second.name == "prefill_20250607T080910_1.txt"
    assert first.read_text(encoding="utf-8") == "first buffer"
    assert second.read_text(encoding="utf-8") == "second buffer"


def test_save_prefill_into_run_directory(store: ArtifactStore) -> None:
    run_dir = store.create_run_dir("debug")

    saved = store.save_prefill("buffer", run_dir)

    assert saved.parent == run_dir


def test_load_prefill_prefers_resume_file(store: ArtifactStore, tmp_path: Path) -> None:
    resume = tmp_path / "resume.txt"
    resume.write_text("Resumed buffer  \n", encoding="utf-8")

    assert store.load_prefill(resume) == "Resumed buffer  \n"


def test_load_prefill_falls_back_to_seed(store: ArtifactStore, tmp_path: Path, caplog) -> None:
    with caplog.at_level("WARNING"):
        prefill = store.load_prefill(tmp_path / "missing.txt")

    assert prefill == "Seed fragment"
    assert "falling back to seed" in caplog.text


def test_load_prefill_without_seed_raises(tmp_path: Path) -> None:
    store = ArtifactStore(output_dir=tmp_path)

    with pytest.raises(PersistenceError):
        store.load_prefill()


def test_create_run_dir_adds_suffix_when_taken(store: ArtifactStore) -> None:
    first = store.create_run_dir("debug")
    second = store.create_run_dir("debug")

    assert first.name == "debug_20250607T080910"
    assert second.name == "debug_20250607T080910_1"
    assert first.is_dir() and second.is_dir()


def test_save_samples_writes_one_file_per_sample(store: ArtifactStore) -> None:
    run_dir = store.create_run_dir("debug")
    samples = [Sample(content="text a", response_id="msg_a"), Sample.absent()]

    written = store.save_samples(run_dir, 3, samples, attempt=2)

    assert [path.name for path in written] == ["3_2_1_msg_a.txt", "3_2_2.txt"]
    assert all(path.parent == run_dir / "3" for path in written)
    assert written[0].read_text(encoding="utf-8") == "text a"
    assert written[1].read_text(encoding="utf-8") == "[None]"


def test_manifest_and_transcript_files(store: ArtifactStore) -> None:
    run_dir = store.create_run_dir("debug")

    manifest_path = store.save_manifest(run_dir, {"outcome": "no_consensus", "attempts": []})
    log_path = store.save_transcript(run_dir, ["line one", "line two"])

    assert json.loads(manifest_path.read_text(encoding="utf-8")) == {
        "attempts": [],
        "outcome": "no_consensus",
    }
    assert log_path.read_text(encoding="utf-8") == "line one\nline two"


def test_write_failure_raises_persistence_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = ArtifactStore(output_dir=blocker, clock=lambda: _FIXED_TIME)

    with pytest.raises(PersistenceError):
        store.save_prefill("buffer")

"""Filesystem persistence for prefills and debug artifacts."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional, Sequence

from consensus_extractor.contracts import Sample

LOGGER = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S"
_ABSENT_SAMPLE_TEXT = "[None]"


class PersistenceError(RuntimeError):
    """Raised when an artifact cannot be written."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ArtifactStore:
    """Read seed prefills and write run artifacts under ``output_dir``."""

    output_dir: Path
    seed_path: Optional[Path] = None
    clock: Callable[[], datetime] = field(default=_utc_now)

    def timestamp(self) -> str:
        """Return the compact timestamp used in artifact names."""

        return self.clock().strftime(_TIMESTAMP_FORMAT)

    def load_prefill(self, prefill_file: Optional[Path] = None) -> str:
        """Return the resume file contents, falling back to the seed fragment.

        Raises:
            PersistenceError: If neither a resume file nor the seed can be read.
        """

        if prefill_file is not None:
            if prefill_file.exists():
                return self._read_text(prefill_file)
            LOGGER.warning("Prefill file %s not found; falling back to seed", prefill_file)
        if self.seed_path is None:
            raise PersistenceError("No seed prefill configured")
        return self._read_text(self.seed_path)

    def save_prefill(self, prefill: str, directory: Optional[Path] = None) -> Path:
        """Write the buffer to a new timestamped file and return its path.

        Existing files are never overwritten; a numeric suffix is added when
        the timestamped name is already taken.
        """

        target_dir = directory or self.output_dir
        stem = f"prefill_{self.timestamp()}"
        target = target_dir / f"{stem}.txt"
        suffix = 1
        while target.exists():
            target = target_dir / f"{stem}_{suffix}.txt"
            suffix += 1
        self._write_text(target, prefill)
        LOGGER.info("Saved to %s", target)
        return target

    def create_run_dir(self, prefix: str) -> Path:
        """Create a fresh ``<prefix>_<timestamp>`` directory for debug output."""

        stem = f"{prefix}_{self.timestamp()}"
        candidate = self.output_dir / stem
        suffix = 1
        while candidate.exists():
            candidate = self.output_dir / f"{stem}_{suffix}"
            suffix += 1
        try:
            candidate.mkdir(parents=True)
        except OSError as exc:
            LOGGER.exception("Failed to create run directory %s", candidate)
            raise PersistenceError(f"Failed to create run directory {candidate}: {exc}") from exc
        return candidate

    def save_samples(
        self,
        run_dir: Path,
        iteration: int,
        samples: Sequence[Sample],
        *,
        attempt: int = 1,
    ) -> list[Path]:
        """Write every raw sample of one attempt to its own file, in request order."""

        iteration_dir = run_dir / str(iteration)
        written: list[Path] = []
        for index, sample in enumerate(samples, start=1):
            id_suffix = f"_{sample.response_id}" if sample.response_id else ""
            target = iteration_dir / f"{iteration}_{attempt}_{index}{id_suffix}.txt"
            content = sample.content if sample.content is not None else _ABSENT_SAMPLE_TEXT
            self._write_text(target, content)
            written.append(target)
        return written

    def save_transcript(self, run_dir: Path, lines: Iterable[str]) -> Path:
        """Write the captured log lines to ``log.txt``."""

        target = run_dir / "log.txt"
        self._write_text(target, "\n".join(lines))
        LOGGER.info("Log saved to %s", target)
        return target

    def save_manifest(self, run_dir: Path, payload: Mapping[str, object]) -> Path:
        """Write the run manifest as pretty-printed JSON."""

        target = run_dir / "manifest.json"
        self._write_text(target, json.dumps(payload, indent=2, sort_keys=True))
        return target

    @staticmethod
    def _read_text(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            LOGGER.exception("Failed to read %s", path)
            raise PersistenceError(f"Failed to read {path}: {exc}") from exc

    @staticmethod
    def _write_text(path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            LOGGER.exception("Failed to write %s", path)
            raise PersistenceError(f"Failed to write {path}: {exc}") from exc


__all__ = ["ArtifactStore", "PersistenceError"]

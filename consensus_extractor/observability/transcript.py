"""Run-scoped log capture and manifest bookkeeping."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

LOGGER = logging.getLogger(__name__)

DEFAULT_CAPTURED_LOGGERS = ("consensus_extractor",)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalise_payload(value: object) -> object:
    """Convert payload values into JSON serialisable primitives."""

    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _normalise_payload(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_payload(item) for item in value]
    return value


class _ParentForwarder(logging.Handler):
    """Hand records at or above ``level`` to the handlers above ``source``."""

    def __init__(self, source: logging.Logger, level: int) -> None:
        super().__init__(level=level)
        self._source = source

    def emit(self, record: logging.LogRecord) -> None:
        if self._source.parent is not None:
            self._source.parent.handle(record)


class RunTranscript(logging.Handler):
    """Logging handler that keeps the formatted messages of a single run."""

    def __init__(self, level: int = logging.INFO, fmt: str = "%(message)s") -> None:
        super().__init__(level=level)
        self.setFormatter(logging.Formatter(fmt))
        self._lines: List[str] = []

    @property
    def lines(self) -> List[str]:
        """Return a copy of the captured lines."""

        return list(self._lines)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._lines.append(self.format(record))
        except Exception:  # noqa: BLE001 - logging handlers must not raise
            self.handleError(record)

    @contextmanager
    def capture(self, logger_names: Sequence[str] = DEFAULT_CAPTURED_LOGGERS) -> Iterator["RunTranscript"]:
        """Attach the handler to ``logger_names`` for the duration of the block.

        A logger quieter than the transcript is opened up to the transcript's
        level and stops propagating while the block runs. A forwarder hands
        records at the original threshold to the parent's handlers, so console
        output keeps the configured level.
        """

        loggers = [logging.getLogger(name) for name in logger_names]
        opened: List[Tuple[logging.Logger, int, Optional[_ParentForwarder]]] = []
        for target in loggers:
            target.addHandler(self)
            effective = target.getEffectiveLevel()
            if effective <= self.level:
                continue
            forwarder: Optional[_ParentForwarder] = None
            if target.propagate:
                forwarder = _ParentForwarder(target, effective)
                target.addHandler(forwarder)
                target.propagate = False
            opened.append((target, target.level, forwarder))
            target.setLevel(self.level)
        try:
            yield self
        finally:
            for target in loggers:
                target.removeHandler(self)
            for target, level, forwarder in opened:
                target.setLevel(level)
                if forwarder is not None:
                    target.removeHandler(forwarder)
                    target.propagate = True


@dataclass
class RunManifest:
    """Structured record of a run, written next to the debug artifacts."""

    mode: str
    model: str
    run_id: str = field(default_factory=lambda: uuid4().hex)
    clock: Callable[[], datetime] = field(default=_utc_now, repr=False)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: List[Dict[str, object]] = field(default_factory=list)
    summary: Dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.started_at is None:
            self.started_at = self.clock()

    def record_attempt(
        self,
        *,
        iteration: int,
        attempt: int,
        max_tokens: int,
        valid_count: int,
        top_count: int,
        decision: str,
        chars_added: int = 0,
    ) -> None:
        """Append one attempt's vote statistics and the decision taken."""

        self.attempts.append(
            {
                "iteration": iteration,
                "attempt": attempt,
                "max_tokens": max_tokens,
                "valid_count": valid_count,
                "top_count": top_count,
                "decision": decision,
                "chars_added": chars_added,
            }
        )

    def finish(self, **summary: object) -> None:
        """Stamp the finish time and merge the final summary values."""

        self.finished_at = self.clock()
        self.summary.update(summary)

    def to_payload(self) -> Dict[str, object]:
        """Return a JSON serialisable representation of the manifest."""

        payload: Dict[str, object] = {
            "run_id": self.run_id,
            "mode": self.mode,
            "model": self.model,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "attempts": self.attempts,
            "summary": self.summary,
        }
        return _normalise_payload(payload)  # type: ignore[return-value]


__all__ = ["DEFAULT_CAPTURED_LOGGERS", "RunManifest", "RunTranscript"]

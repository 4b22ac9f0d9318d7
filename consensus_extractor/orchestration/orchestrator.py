"""Consensus extraction loop driving the sampling, voting and append cycle."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence

from consensus_extractor.config import AppConfig
from consensus_extractor.consensus import (
    AdaptiveController,
    LoopGuard,
    compute_threshold,
    find_consensus,
    normalize_whitespace,
    summarize_responses,
    trim_to_word_boundary,
)
from consensus_extractor.contracts import ResponseGroup, Sample, TerminationOutcome
from consensus_extractor.observability import RunManifest, RunTranscript
from consensus_extractor.storage import ArtifactStore, PersistenceError

LOGGER = logging.getLogger(__name__)

_RULE = "=" * 60
_PREFILL_PREVIEW_CHARS = 120


class SampleSource(Protocol):
    """Anything able to produce an ordered batch of samples for a prefill."""

    def fetch_batch(
        self,
        prefill: str,
        num_requests: int,
        max_tokens: int,
        *,
        model: Optional[str] = None,
    ) -> List[Sample]:
        """Return ``num_requests`` samples in request order."""


@dataclass(frozen=True)
class RunResult:
    """Summary returned once an extraction run has terminated."""

    outcome: TerminationOutcome
    prefill: str
    iterations_completed: int
    chars_added: int
    saved_path: Path
    run_dir: Optional[Path] = None
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SampleReport:
    """Statistics gathered by a sampling-only run."""

    samples: List[Sample]
    raw_groups: List[ResponseGroup]
    normalized_groups: List[ResponseGroup]
    run_dir: Path

    @property
    def valid_count(self) -> int:
        """Return the number of samples that carried a completion."""

        return sum(1 for sample in self.samples if sample.is_valid)


@dataclass
class _RunState:
    """Buffer and counters owned by a single run."""

    buffer: str
    iterations_completed: int = 0
    chars_added: int = 0


@dataclass
class _IterationState:
    """Token budget and attempt counter for the iteration in progress."""

    iteration: int
    max_tokens: int
    attempt: int = 0


class ExtractionOrchestrator:
    """Grow a prefill by appending continuations the sampled responses agree on."""

    def __init__(
        self,
        *,
        config: AppConfig,
        requester: SampleSource,
        store: ArtifactStore,
        cancel_event: Optional[threading.Event] = None,
        transcript_factory: Callable[[], RunTranscript] = RunTranscript,
    ) -> None:
        self._config = config
        self._settings = config.extraction
        self._requester = requester
        self._store = store
        self._cancel_event = cancel_event
        self._transcript_factory = transcript_factory
        self._loop_guard = LoopGuard(min_chars=self._settings.loop_min_chars)
        self._adaptive = AdaptiveController(
            enabled=self._settings.adaptive,
            min_tokens=self._settings.min_tokens,
        )
        self._threshold = compute_threshold(self._settings.num_requests, self._settings.consensus_pct)

    @property
    def threshold(self) -> int:
        """Return the number of agreeing responses required per attempt."""

        return self._threshold

    def run(self, prefill: str, *, source: str = "seed") -> RunResult:
        """Execute the extraction loop and persist the buffer exactly once.

        Args:
            prefill: Starting buffer content.
            source: Label describing where the prefill came from, for logs.

        Returns:
            RunResult: Terminal outcome, final buffer and the saved artifact path.

        Raises:
            PersistenceError: If the final buffer cannot be written.
        """

        run_dir: Optional[Path] = None
        if self._config.output.debug:
            run_dir = self._store.create_run_dir(self._config.output.debug_dir_prefix)
        transcript = self._transcript_factory()
        manifest = RunManifest(mode="extract", model=self._config.service.model)
        state = _RunState(buffer=prefill)
        errors: List[str] = []
        outcome = TerminationOutcome.ERROR
        saved_path: Optional[Path] = None

        try:
            with transcript.capture():
                if run_dir is not None:
                    LOGGER.info("Debug mode: saving to %s/", run_dir)
                LOGGER.info("Loaded prefill from %s (%s chars)", source, len(prefill))
                LOGGER.info("Model: %s", self._config.service.model)
                if self._settings.adaptive:
                    LOGGER.info(
                        "Adaptive mode: will reduce tokens on no consensus (min %s)",
                        self._settings.min_tokens,
                    )
                try:
                    outcome = self._extract(state, manifest, run_dir)
                except KeyboardInterrupt:
                    LOGGER.warning("Interrupted! Saving progress...")
                    outcome = TerminationOutcome.INTERRUPTED
                except Exception as exc:  # noqa: BLE001 - progress is saved before reporting
                    LOGGER.exception("Extraction failed: %s", exc)
                    errors.append(str(exc))
                    outcome = TerminationOutcome.ERROR

                try:
                    saved_path = self._store.save_prefill(state.buffer, run_dir)
                except PersistenceError as exc:
                    errors.append(str(exc))
                    raise
                LOGGER.info(
                    "Done! Outcome %s after %s iterations (+%s chars)",
                    outcome.value,
                    state.iterations_completed,
                    state.chars_added,
                )
        finally:
            if run_dir is not None:
                manifest.finish(
                    outcome=outcome.value,
                    iterations_completed=state.iterations_completed,
                    chars_added=state.chars_added,
                    final_chars=len(state.buffer),
                    saved_path=saved_path,
                    errors=errors,
                )
                self._store.save_manifest(run_dir, manifest.to_payload())
                self._store.save_transcript(run_dir, transcript.lines)

        return RunResult(
            outcome=outcome,
            prefill=state.buffer,
            iterations_completed=state.iterations_completed,
            chars_added=state.chars_added,
            saved_path=saved_path,
            run_dir=run_dir,
            errors=errors,
        )

    def sample(self, prefill: str, num_samples: int, *, source: str = "seed") -> SampleReport:
        """Gather one batch of samples and report how they group, without appending."""

        if num_samples < 1:
            raise ValueError("num_samples must be positive")
        run_dir = self._store.create_run_dir(self._config.output.sample_dir_prefix)
        transcript = self._transcript_factory()
        with transcript.capture():
            LOGGER.info("Sample mode: %s samples from %s (%s chars)", num_samples, source, len(prefill))
            LOGGER.info("Model: %s", self._config.service.model)
            LOGGER.info("Saving to %s/", run_dir)

            samples = self._requester.fetch_batch(
                prefill,
                num_samples,
                self._settings.max_tokens,
                model=self._config.service.model,
            )
            self._store.save_samples(run_dir, 1, samples)
            responses = [sample.content for sample in samples]

            raw_groups = self._log_response_summary(responses, num_samples, limit=5, width=80)
            normalized_groups = summarize_responses(responses, key=normalize_whitespace)
            LOGGER.info("Normalized groups: %s", len(normalized_groups))
            for position, group in enumerate(normalized_groups, start=1):
                LOGGER.info("  Group %s (%sx): %s...", position, group.count, group.preview(80))

        self._store.save_transcript(run_dir, transcript.lines)
        return SampleReport(
            samples=samples,
            raw_groups=raw_groups,
            normalized_groups=normalized_groups,
            run_dir=run_dir,
        )

    def _extract(
        self,
        state: _RunState,
        manifest: RunManifest,
        run_dir: Optional[Path],
    ) -> TerminationOutcome:
        """Run iterations until a terminal condition; the caller persists the buffer."""

        num_requests = self._settings.num_requests
        for iteration in range(1, self._settings.max_iterations + 1):
            current = _IterationState(iteration=iteration, max_tokens=self._settings.max_tokens)
            while True:
                if self._cancel_event is not None and self._cancel_event.is_set():
                    LOGGER.warning("Interrupted! Saving progress...")
                    return TerminationOutcome.INTERRUPTED
                current.attempt += 1
                self._log_iteration_header(state.buffer, current)

                samples = self._requester.fetch_batch(
                    state.buffer,
                    num_requests,
                    current.max_tokens,
                    model=self._config.service.model,
                )
                if run_dir is not None:
                    self._store.save_samples(run_dir, iteration, samples, attempt=current.attempt)
                responses = [sample.content for sample in samples]
                self._log_response_summary(responses, num_requests, limit=3, width=60)

                valid_count = sum(1 for sample in samples if sample.is_valid)
                if valid_count < self._threshold:
                    LOGGER.warning(
                        "Insufficient responses (%s/%s, need %s)",
                        valid_count,
                        num_requests,
                        self._threshold,
                    )
                    self._record(manifest, current, valid_count, 0, "insufficient_samples")
                    return TerminationOutcome.INSUFFICIENT_SAMPLES

                result = find_consensus(responses, self._threshold)
                if result.consensus:
                    trimmed = trim_to_word_boundary(normalize_whitespace(result.consensus))
                    if self._loop_guard.detects_loop(trimmed, state.buffer):
                        LOGGER.warning("LOOP DETECTED! Content already in prefill.")
                        self._record(manifest, current, valid_count, result.count, "loop_detected")
                        return TerminationOutcome.LOOP_DETECTED
                    addition = trimmed.lstrip()
                    LOGGER.info(
                        "Consensus (%s/%s)! Adding %s chars",
                        result.count,
                        num_requests,
                        len(addition),
                    )
                    state.buffer += addition
                    state.chars_added += len(addition)
                    state.iterations_completed = iteration
                    self._record(
                        manifest, current, valid_count, result.count, "consensus", len(addition)
                    )
                    break

                # An empty representative still wins the vote but adds nothing.
                empty_consensus = result.reached
                if empty_consensus:
                    LOGGER.warning("Empty consensus (%s/%s): nothing to append", result.count, num_requests)
                reduced = self._adaptive.next_budget(current.max_tokens)
                if reduced is None:
                    if empty_consensus:
                        LOGGER.warning("Saving progress...")
                    else:
                        LOGGER.warning(
                            "No consensus reached (top %s/%s, need %s). Saving progress...",
                            result.count,
                            num_requests,
                            self._threshold,
                        )
                    decision = "empty_consensus" if empty_consensus else "no_consensus"
                    self._record(manifest, current, valid_count, result.count, decision)
                    return TerminationOutcome.NO_CONSENSUS
                if empty_consensus:
                    LOGGER.info("Reducing to %s tokens...", reduced)
                else:
                    LOGGER.info(
                        "No consensus (top %s/%s). Reducing to %s tokens...",
                        result.count,
                        num_requests,
                        reduced,
                    )
                self._record(manifest, current, valid_count, result.count, "reduce_tokens")
                current.max_tokens = reduced

        LOGGER.info("Reached max iterations (%s). Saving...", self._settings.max_iterations)
        return TerminationOutcome.MAX_ITERATIONS_REACHED

    @staticmethod
    def _record(
        manifest: RunManifest,
        current: _IterationState,
        valid_count: int,
        top_count: int,
        decision: str,
        chars_added: int = 0,
    ) -> None:
        manifest.record_attempt(
            iteration=current.iteration,
            attempt=current.attempt,
            max_tokens=current.max_tokens,
            valid_count=valid_count,
            top_count=top_count,
            decision=decision,
            chars_added=chars_added,
        )

    @staticmethod
    def _log_iteration_header(buffer: str, current: _IterationState) -> None:
        LOGGER.info(_RULE)
        LOGGER.info(
            "Iteration %s | Prefill: %s chars | Tokens: %s",
            current.iteration,
            len(buffer),
            current.max_tokens,
        )
        if buffer:
            LOGGER.info("...%s", buffer[-_PREFILL_PREVIEW_CHARS:])
        LOGGER.info(_RULE)

    @staticmethod
    def _log_response_summary(
        responses: Sequence[Optional[str]],
        num_requests: int,
        *,
        limit: int,
        width: int,
    ) -> List[ResponseGroup]:
        valid = sum(1 for response in responses if response is not None)
        LOGGER.info("Got %s/%s valid responses", valid, num_requests)
        groups = summarize_responses(responses, limit=limit)
        for group in groups:
            LOGGER.info("  [%sx] %s...", group.count, group.preview(width))
        return groups


__all__ = ["ExtractionOrchestrator", "RunResult", "SampleReport", "SampleSource"]

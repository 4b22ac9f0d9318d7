"""Summarize an extraction transcript (``log.txt``) iteration by iteration."""

from __future__ import annotations

import argparse
import dataclasses
import re
from collections import OrderedDict
from pathlib import Path
from typing import Iterable, List, Optional


ITERATION_PATTERN = re.compile(
    r"Iteration (?P<iteration>\d+) \| Prefill: (?P<chars>\d+) chars \| Tokens: (?P<tokens>\d+)"
)
VALID_PATTERN = re.compile(r"Got (?P<valid>\d+)/(?P<total>\d+) valid responses")
CONSENSUS_PATTERN = re.compile(r"Consensus \((?P<count>\d+)/(?P<total>\d+)\)! Adding (?P<added>\d+) chars")
OUTCOME_PATTERN = re.compile(r"Done! Outcome (?P<outcome>[a-z_]+) after (?P<iterations>\d+) iterations")


@dataclasses.dataclass
class IterationRecord:
    """Vote history of a single iteration."""

    number: int
    prefill_chars: int
    token_budgets: List[int] = dataclasses.field(default_factory=list)
    valid_counts: List[int] = dataclasses.field(default_factory=list)
    consensus_count: Optional[int] = None
    chars_added: int = 0

    @property
    def attempts(self) -> int:
        """Return how many request batches the iteration needed."""

        return len(self.token_budgets)

    @property
    def succeeded(self) -> bool:
        """Return whether the iteration appended a continuation."""

        return self.consensus_count is not None


@dataclasses.dataclass
class LogSummary:
    """Aggregated insights extracted from a transcript."""

    iterations: List[IterationRecord]
    outcome: Optional[str] = None

    @property
    def total_chars_added(self) -> int:
        """Return the number of characters appended across all iterations."""

        return sum(record.chars_added for record in self.iterations)

    def format_report(self) -> str:
        """Generate a human-readable report describing the transcript."""

        lines: List[str] = []
        if not self.iterations:
            lines.append("No iterations found.")
        else:
            lines.append("Iterations:")
            for record in self.iterations:
                budgets = " -> ".join(str(tokens) for tokens in record.token_budgets)
                if record.succeeded:
                    result = f"consensus {record.consensus_count}, +{record.chars_added} chars"
                else:
                    result = "no append"
                lines.append(
                    f"  - #{record.number}: prefill={record.prefill_chars} tokens={budgets} ({result})"
                )
            lines.append("")
            lines.append(f"Total added: {self.total_chars_added} chars")
        lines.append(f"Outcome: {self.outcome or 'unknown'}")
        return "\n".join(lines)


def _parse_lines(lines: Iterable[str]) -> LogSummary:
    """Parse transcript lines into a structured summary."""

    iterations: "OrderedDict[int, IterationRecord]" = OrderedDict()
    current: Optional[IterationRecord] = None
    outcome: Optional[str] = None

    for line in lines:
        iteration_match = ITERATION_PATTERN.search(line)
        if iteration_match:
            number = int(iteration_match.group("iteration"))
            current = iterations.get(number)
            if current is None:
                current = IterationRecord(
                    number=number,
                    prefill_chars=int(iteration_match.group("chars")),
                )
                iterations[number] = current
            current.token_budgets.append(int(iteration_match.group("tokens")))
            continue

        outcome_match = OUTCOME_PATTERN.search(line)
        if outcome_match:
            outcome = outcome_match.group("outcome")
            continue

        if current is None:
            continue

        valid_match = VALID_PATTERN.search(line)
        if valid_match:
            current.valid_counts.append(int(valid_match.group("valid")))
            continue

        consensus_match = CONSENSUS_PATTERN.search(line)
        if consensus_match:
            current.consensus_count = int(consensus_match.group("count"))
            current.chars_added = int(consensus_match.group("added"))

    return LogSummary(iterations=list(iterations.values()), outcome=outcome)


def analyze_log_file(path: Path) -> LogSummary:
    """Load and analyze a transcript located at ``path``."""

    with path.open("r", encoding="utf-8") as handle:
        return _parse_lines(handle)


def main() -> None:
    """Entry point for the command-line interface."""

    parser = argparse.ArgumentParser(
        description="Inspect an extraction transcript to see how each iteration voted."
    )
    parser.add_argument("logfile", type=Path, help="Path to the log.txt transcript to analyze")
    args = parser.parse_args()

    summary = analyze_log_file(args.logfile)
    print(summary.format_report())


if __name__ == "__main__":
    main()

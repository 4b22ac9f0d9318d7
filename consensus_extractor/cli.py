"""Command line entry point for consensus prefill extraction."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Sequence

from consensus_extractor.config import AppConfig, ConfigError, load_config
from consensus_extractor.orchestration import ExtractionOrchestrator
from consensus_extractor.sampling import API_KEY_ENV_VAR, SampleRequester
from consensus_extractor.storage import ArtifactStore, PersistenceError

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

_EXAMPLES = """\
examples:
  consensus-extractor -n 50 -d
  consensus-extractor --sample 10 -m 200
  consensus-extractor -n 50 -p 80 -r 10 -d -a
"""


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser; unset options fall back to config.yaml."""

    parser = argparse.ArgumentParser(
        prog="consensus-extractor",
        description="Extract memorized text by appending continuations that repeated samples agree on.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=_EXAMPLES,
    )
    parser.add_argument("-n", "--max-iterations", type=int, help="Max iterations")
    parser.add_argument("-f", "--prefill-file", type=Path, help="Load prefill from file")
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        default=None,
        help="Save all responses, the log and a manifest to a debug folder",
    )
    parser.add_argument("-m", "--max-tokens", type=int, help="Max tokens per response")
    parser.add_argument(
        "-S",
        "--sample",
        type=int,
        metavar="N",
        help="Sample mode: gather N samples without committing",
    )
    parser.add_argument("-p", "--consensus-pct", type=float, help="Consensus threshold %%")
    parser.add_argument("-r", "--num-requests", type=int, help="Requests per iteration")
    parser.add_argument(
        "-a",
        "--adaptive",
        action="store_true",
        default=None,
        help="Reduce tokens on no consensus",
    )
    parser.add_argument("--min-tokens", type=int, help="Min tokens for adaptive mode")
    parser.add_argument("--model", help="Model ID")
    parser.add_argument("--output-dir", type=Path, help="Directory for prefills and debug folders")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (default: INFO)",
    )
    return parser


def resolve_config(args: argparse.Namespace) -> AppConfig:
    """Load config.yaml and apply command line overrides.

    Raises:
        ConfigError: If the file or the merged values are invalid.
    """

    base = load_config(args.config) if args.config else load_config()
    return base.with_overrides(
        service={"model": args.model},
        extraction={
            "max_iterations": args.max_iterations,
            "num_requests": args.num_requests,
            "consensus_pct": args.consensus_pct,
            "max_tokens": args.max_tokens,
            "min_tokens": args.min_tokens,
            "adaptive": args.adaptive,
        },
        output={
            "debug": args.debug,
            "output_dir": str(args.output_dir) if args.output_dir else None,
        },
    )


@contextmanager
def _cancel_on_interrupt(cancel_event: threading.Event) -> Iterator[None]:
    """Turn the first Ctrl-C into a cancellation request observed between iterations."""

    def _handler(signum: int, frame: Any) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        LOGGER.warning("Interrupt received; stopping after the current request batch")
        cancel_event.set()

    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    requester_factory: Optional[Callable[[AppConfig], SampleRequester]] = None,
) -> int:
    """Entry point for the extractor CLI.

    Returns:
        int: Exit status code where ``0`` indicates a clean run.
    """

    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        config = resolve_config(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    if args.sample is not None and args.sample < 1:
        print("Error: --sample must be positive", file=sys.stderr)
        return EXIT_CONFIG

    factory = requester_factory or (lambda cfg: SampleRequester(settings=cfg.service))
    try:
        requester = factory(config)
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print(f"Set it: export {API_KEY_ENV_VAR}=sk-ant-...", file=sys.stderr)
        return EXIT_CONFIG

    store = ArtifactStore(
        output_dir=Path(config.output.output_dir),
        seed_path=config.extraction.resolve_seed_path(),
    )
    cancel_event = threading.Event()
    orchestrator = ExtractionOrchestrator(
        config=config,
        requester=requester,
        store=store,
        cancel_event=cancel_event,
    )
    source = str(args.prefill_file) if args.prefill_file else "seed"

    try:
        prefill = store.load_prefill(args.prefill_file)
        with _cancel_on_interrupt(cancel_event):
            if args.sample is not None:
                orchestrator.sample(prefill, args.sample, source=source)
                return EXIT_OK
            result = orchestrator.run(prefill, source=source)
    except PersistenceError as exc:
        LOGGER.error("Unable to persist extraction output: %s", exc)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        LOGGER.warning("Interrupted")
        return EXIT_INTERRUPTED
    finally:
        requester.close()

    return EXIT_FAILURE if result.outcome.is_failure else EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())

"""Command line interface for VocabWeave."""

from __future__ import annotations

import argparse
import asyncio
import logging
import pathlib
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from .configuration import ConfigStore, VocabWeaveSettings, load_settings
from .documents import load_document
from .errors import (
    ConfigurationError,
    OverwriteRefusedError,
    VocabWeaveError,
)
from .orchestrator import Orchestrator, is_memorizable
from .providers import GlossaryVocabularyProvider, VocabularyProvider, build_provider
from .replacer import ReplacementEngine
from .session import ProcessingSession
from .storage import StateStore
from .structures import PassOutcome, PassSummary, Viewport

logger = logging.getLogger(__name__)


@dataclass
class AnnotationReport:
    """Report returned after annotating or restoring a document."""

    input_path: pathlib.Path
    output_path: pathlib.Path
    action: str
    words: int
    provider_name: str
    summary: PassSummary | None = None
    notes: List[str] = field(default_factory=list)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vocabweave",
        description=(
            "Weave foreign-language vocabulary into HTML documents at your level, "
            "and take it out again."
        ),
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    annotate = subparsers.add_parser(
        "annotate",
        help="Replace learnable words in an HTML file with annotated translations.",
    )
    annotate.add_argument("input_file", help="Path to the .html or .htm file to annotate.")
    annotate.add_argument(
        "-o",
        "--output",
        help="Output file path. Defaults to appending '_vocab' to the input name.",
    )
    annotate.add_argument(
        "--url",
        help="Address the document was loaded from (used for the site blacklist).",
    )
    annotate.add_argument(
        "--viewport-only",
        action="store_true",
        help="Only process blocks near the visible window.",
    )
    annotate.add_argument(
        "--scroll-top",
        type=float,
        default=0.0,
        help="Vertical scroll offset of the visible window (default: 0).",
    )
    annotate.add_argument(
        "--viewport-height",
        type=float,
        default=900.0,
        help="Height of the visible window in pixels (default: 900).",
    )
    annotate.add_argument(
        "--glossary",
        help="YAML or JSON word list to use instead of the language model.",
    )
    annotate.add_argument(
        "--difficulty",
        help="Learner CEFR level (A1-C2). Overrides the configured level.",
    )
    annotate.add_argument(
        "--intensity",
        choices=["low", "medium", "high"],
        help="How many words to replace per block. Overrides the configured intensity.",
    )
    _add_common_output_flags(annotate)
    annotate.add_argument(
        "--debug-provider",
        action="store_true",
        help="Log complete provider requests and responses for troubleshooting.",
    )

    restore = subparsers.add_parser(
        "restore",
        help="Remove every annotation from a previously annotated HTML file.",
    )
    restore.add_argument("input_file", help="Path to the annotated HTML file.")
    restore.add_argument(
        "-o",
        "--output",
        help="Output file path. Defaults to appending '_restored' to the input name.",
    )
    _add_common_output_flags(restore)

    stats = subparsers.add_parser("stats", help="Show learning statistics.")
    stats.add_argument("-v", "--verbose", action="store_true", help="Show detailed logging.")

    learn = subparsers.add_parser("learn", help="Mark a word as known so it is never replaced.")
    learn.add_argument("word", help="The word as it appears in the text.")
    learn.add_argument("--translation", default="", help="Optional translation to remember.")
    learn.add_argument("-v", "--verbose", action="store_true", help="Show detailed logging.")

    memorize = subparsers.add_parser("memorize", help="Add a word to the memorize list.")
    memorize.add_argument("word", help="Word or short phrase to practise.")
    memorize.add_argument("-v", "--verbose", action="store_true", help="Show detailed logging.")
    return parser


def _add_common_output_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Allow overwriting the output file if it already exists.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed progress information.",
    )


def derive_output_path(input_path: pathlib.Path, suffix: str) -> pathlib.Path:
    return input_path.with_name(f"{input_path.stem}_{suffix}{input_path.suffix}")


def validate_paths(
    input_path: pathlib.Path,
    output_path: pathlib.Path,
    force_overwrite: bool,
) -> None:
    """Validate input/output path combinations and overwrite policy."""

    if not input_path.exists():
        raise FileNotFoundError(
            "Input file not found. Please provide a readable .html or .htm file."
        )
    if not input_path.is_file():
        raise VocabWeaveError("Input path must be a file.")

    if input_path.resolve() == output_path.resolve():
        raise OverwriteRefusedError(
            "The output path matches the input document. Refusing to overwrite the source file."
        )

    if output_path.exists() and not force_overwrite:
        raise OverwriteRefusedError(
            "The output file already exists. Rename it or use the overwrite flag."
        )


def load_glossary(path: pathlib.Path) -> Dict[str, Dict[str, Any]]:
    """Read a word list mapping each word to a translation or a detail mapping."""

    try:
        with path.open("r", encoding="utf-8") as handle:
            parsed = yaml.safe_load(handle)
    except OSError as exc:
        raise VocabWeaveError(f"Glossary could not be read: {exc}") from exc
    except yaml.YAMLError as exc:
        raise VocabWeaveError(f"Invalid glossary file {path}: {exc}") from exc
    if not isinstance(parsed, Mapping):
        raise VocabWeaveError(f"Invalid glossary file {path}: expected a mapping of words.")

    entries: Dict[str, Dict[str, Any]] = {}
    for word, value in parsed.items():
        if isinstance(value, Mapping):
            entries[str(word)] = dict(value)
        elif value is not None:
            entries[str(word)] = {"translation": str(value)}
    return entries


def _state_for(settings: VocabWeaveSettings) -> StateStore:
    data_dir = settings.VOCABWEAVE_DATA_DIR
    return StateStore(pathlib.Path(data_dir).expanduser() if data_dir else None)


def execute_annotation(
    *,
    input_file: str,
    output_file: str | None,
    url: str | None = None,
    viewport_only: bool = False,
    scroll_top: float = 0.0,
    viewport_height: float = 900.0,
    glossary_file: str | None = None,
    difficulty: str | None = None,
    intensity: str | None = None,
    force_overwrite: bool = False,
    provider_debug: bool = False,
    app_dir: pathlib.Path | None = None,
) -> tuple[int, AnnotationReport | None, str | None]:
    """Execute an annotation run and return the exit code, report, and message."""

    input_path = pathlib.Path(input_file).expanduser().resolve()
    output_path = (
        pathlib.Path(output_file).expanduser().resolve()
        if output_file
        else derive_output_path(input_path, "vocab")
    )

    try:
        validate_paths(input_path, output_path, force_overwrite=force_overwrite)
    except FileNotFoundError as exc:
        return 1, None, str(exc)
    except VocabWeaveError as exc:
        return 1, None, str(exc)

    overrides = {
        "VOCABWEAVE_DIFFICULTY_LEVEL": difficulty,
        "VOCABWEAVE_INTENSITY": intensity,
    }

    try:
        settings = load_settings(app_dir, overrides)
        glossary = load_glossary(pathlib.Path(glossary_file)) if glossary_file else None
        document = load_document(
            input_path,
            url=url,
            viewport=Viewport(scroll_top=scroll_top, height=viewport_height),
        )
    except VocabWeaveError as exc:
        return 1, None, str(exc)

    if glossary is not None:
        provider: VocabularyProvider = GlossaryVocabularyProvider(glossary)
        provider_name = f"glossary ({pathlib.Path(glossary_file or '').name})"

        def provider_factory(config: Any, *, debug: bool = False) -> VocabularyProvider:
            return provider

    else:
        provider_factory = build_provider
        provider_name = f"{settings.LLM_PROVIDER} ({settings.VOCABWEAVE_MODEL_NAME})"

    state = _state_for(settings)
    orchestrator = Orchestrator(
        document,
        ConfigStore(state, app_dir=app_dir, overrides=overrides),
        state,
        provider_factory=provider_factory,
        provider_debug=provider_debug,
    )

    async def run() -> PassSummary:
        await orchestrator.session.load(state)
        try:
            return await orchestrator.process_page(viewport_only=viewport_only)
        finally:
            await orchestrator.resolver.drain()

    try:
        summary = asyncio.run(run())
    except VocabWeaveError as exc:
        return 1, None, str(exc)
    except KeyboardInterrupt:
        return 1, None, "Annotation interrupted by user."

    if summary.outcome is PassOutcome.FAILED:
        return 1, None, "\n".join(summary.error_messages) or "Annotation failed."

    output_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        document.save(output_path)
    except OSError as exc:
        return 1, None, f"Could not write {output_path}: {exc}"

    notes = list(summary.error_messages)
    if summary.outcome is PassOutcome.DISABLED:
        notes.append("VocabWeave is disabled in the configuration; nothing was replaced.")
    elif summary.outcome is PassOutcome.BLACKLISTED:
        notes.append(f"{document.hostname} is on the site blacklist; nothing was replaced.")

    report = AnnotationReport(
        input_path=input_path,
        output_path=output_path,
        action="annotate",
        words=summary.processed,
        provider_name=provider_name,
        summary=summary,
        notes=notes,
    )
    return 0, report, None


def execute_restore(
    *,
    input_file: str,
    output_file: str | None,
    force_overwrite: bool = False,
) -> tuple[int, AnnotationReport | None, str | None]:
    """Strip every annotation from a document and save the plain result."""

    input_path = pathlib.Path(input_file).expanduser().resolve()
    output_path = (
        pathlib.Path(output_file).expanduser().resolve()
        if output_file
        else derive_output_path(input_path, "restored")
    )

    try:
        validate_paths(input_path, output_path, force_overwrite=force_overwrite)
        document = load_document(input_path)
    except FileNotFoundError as exc:
        return 1, None, str(exc)
    except VocabWeaveError as exc:
        return 1, None, str(exc)

    restored = ReplacementEngine(document, ProcessingSession()).restore_all()

    output_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        document.save(output_path)
    except OSError as exc:
        return 1, None, f"Could not write {output_path}: {exc}"

    report = AnnotationReport(
        input_path=input_path,
        output_path=output_path,
        action="restore",
        words=restored,
        provider_name="-",
    )
    return 0, report, None


def execute_stats(app_dir: pathlib.Path | None = None) -> tuple[int, Dict[str, Any] | None, str | None]:
    try:
        settings = load_settings(app_dir)
    except ConfigurationError as exc:
        return 1, None, str(exc)
    state = _state_for(settings)

    async def collect() -> Dict[str, Any]:
        stats = await state.stats()
        stats["learned_words"] = len(await state.learned_words())
        stats["memorize_list"] = len(await state.memorize_list())
        stats["cached_words"] = len(await state.load_cache_records())
        return stats

    try:
        return 0, asyncio.run(collect()), None
    except VocabWeaveError as exc:
        return 1, None, str(exc)


def execute_learn(
    word: str,
    translation: str = "",
    app_dir: pathlib.Path | None = None,
) -> tuple[int, None, str]:
    word = word.strip()
    if not word:
        return 1, None, "Please give a non-empty word."
    try:
        state = _state_for(load_settings(app_dir))
        added = asyncio.run(state.add_learned_word(word, translation))
    except VocabWeaveError as exc:
        return 1, None, str(exc)
    if added:
        return 0, None, f"'{word}' will no longer be replaced."
    return 0, None, f"'{word}' is already on your learned list."


def execute_memorize(word: str, app_dir: pathlib.Path | None = None) -> tuple[int, None, str]:
    if not is_memorizable(word):
        return 1, None, "Words to memorize must be between 2 and 49 characters long."
    word = word.strip()
    try:
        state = _state_for(load_settings(app_dir))
        added = asyncio.run(state.add_to_memorize(word))
    except VocabWeaveError as exc:
        return 1, None, str(exc)
    if added:
        return 0, None, f"Added '{word}' to your memorize list."
    return 0, None, f"'{word}' is already on your memorize list."


def print_summary(report: AnnotationReport) -> None:
    """Output a friendly report once processing completes."""

    if report.action == "restore":
        print("\nRestore complete.")
    else:
        print("\nAnnotation complete.")
    print(f"  Input file:      {report.input_path}")
    print(f"  Output file:     {report.output_path}")
    if report.action == "restore":
        print(f"  Words restored:  {report.words}")
    else:
        print(f"  Words replaced:  {report.words}")
        print(f"  Provider:        {report.provider_name}")
    summary = report.summary
    if summary is not None:
        print(f"  Segments:        {summary.segments}")
        print(f"  Elapsed time:    {summary.elapsed_seconds:.2f} seconds")
    if report.notes:
        print("  Notes:")
        for message in report.notes:
            print(f"    - {message}")


def print_stats(stats: Mapping[str, Any]) -> None:
    print("Learning statistics")
    print(f"  Total words:     {stats.get('total_words', 0)}")
    print(f"  Today:           {stats.get('today_words', 0)}")
    print(f"  Learned words:   {stats.get('learned_words', 0)}")
    print(f"  Memorize list:   {stats.get('memorize_list', 0)}")
    print(f"  Cached words:    {stats.get('cached_words', 0)}")
    hits = int(stats.get("cache_hits", 0))
    misses = int(stats.get("cache_misses", 0))
    total = hits + misses
    rate = f"{hits / total:.0%}" if total else "n/a"
    print(f"  Cache hits:      {hits} / {total} ({rate})")


def configure_logging(verbose: bool, provider_debug: bool = False) -> None:
    level = logging.DEBUG if provider_debug else logging.INFO if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    if args.command is None:
        parser.print_help()
        return 1

    provider_debug = bool(getattr(args, "debug_provider", False))
    configure_logging(bool(getattr(args, "verbose", False)), provider_debug)

    if args.command == "annotate":
        exit_code, report, message = execute_annotation(
            input_file=args.input_file,
            output_file=args.output,
            url=args.url,
            viewport_only=args.viewport_only,
            scroll_top=args.scroll_top,
            viewport_height=args.viewport_height,
            glossary_file=args.glossary,
            difficulty=args.difficulty,
            intensity=args.intensity,
            force_overwrite=args.force,
            provider_debug=provider_debug,
        )
    elif args.command == "restore":
        exit_code, report, message = execute_restore(
            input_file=args.input_file,
            output_file=args.output,
            force_overwrite=args.force,
        )
    elif args.command == "stats":
        exit_code, stats, message = execute_stats()
        if message:
            print(message)
        if stats is not None:
            print_stats(stats)
        return exit_code
    elif args.command == "learn":
        exit_code, report, message = execute_learn(args.word, args.translation)
    else:
        exit_code, report, message = execute_memorize(args.word)

    if message:
        print(message)
    if report:
        print_summary(report)
    return exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

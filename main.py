"""
main.py - CLI for the wine list scanner.

    winelens scan --wines wines.csv --frames frames.json
        Replays recorded OCR frames through the session pipeline:
        1. OCR (replayed fragments)
        2. group
        3. match
        4. merge into the session
    winelens serve --port 8000
        Serves the local store over HTTP (see api.py).

A frames file is a JSON list; each frame is either a list of fragments or an
object with a "fragments" list. A fragment is
    {"text": "...", "bounding_box": {"x": .., "y": .., "width": .., "height": ..}, "confidence": 0.9}
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from api import run as run_api
from config import ScannerSettings
from logging_config import get_logger, setup_logging
from match import WineMatcher
from models import Frame, ScanSession
from ocr import create_ocr_provider
from remote_search import RemoteSearchClient
from session import ScanPipeline
from session_store import SessionStore
from wine_store import LocalWineStore

logger = get_logger("winelens")


def _configure_output_symbols() -> tuple[str, str]:
    """Configure stdout encoding and return safe line/star symbols."""
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (AttributeError, OSError, ValueError):
        pass

    try:
        "═★".encode(sys.stdout.encoding or "utf-8")
        return "═", "★"
    except (LookupError, UnicodeEncodeError):
        return "=", "*"


BOX_CHAR, STAR_CHAR = _configure_output_symbols()


def load_frames(frames_path: str) -> list[Frame]:
    """Load and validate a recorded frames JSON file."""
    path = str(frames_path or "").strip()
    if not path:
        raise ValueError("frames_path cannot be empty")
    if not os.path.exists(path):
        raise FileNotFoundError(f"Frames file not found: {path}\nProvide a valid JSON path with --frames")

    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ValueError(f"Failed to read frames '{path}': {exc}") from exc
    if not isinstance(raw, list):
        raise ValueError(f"Frames file must hold a JSON list, got {type(raw).__name__}")

    frames: list[Frame] = []
    for index, item in enumerate(raw):
        payload: Any = {"fragments": item} if isinstance(item, list) else item
        try:
            frames.append(Frame.model_validate(payload))
        except ValidationError as exc:
            raise ValueError(f"Frame {index} is invalid: {exc.error_count()} error(s)\n{exc}") from exc
    logger.info("frames_loaded | path=%s | frames=%d", path, len(frames))
    return frames


async def replay_scan(
    frames: list[Frame],
    store: LocalWineStore,
    settings: ScannerSettings,
    session_store: Optional[SessionStore] = None,
    location: Optional[str] = None,
) -> ScanSession:
    """Run every frame through a fresh pipeline; each pass completes before the next frame."""
    replay_settings = settings.model_copy(update={"throttle_interval_s": 0.0})
    remote = RemoteSearchClient.from_settings(replay_settings)
    pipeline = ScanPipeline(
        create_ocr_provider(replay_settings),
        WineMatcher(store, remote=remote, settings=replay_settings),
        settings=replay_settings,
        store=session_store,
        session=ScanSession(),
    )
    try:
        if not pipeline.start():
            raise RuntimeError(f"Scanner failed to start: {pipeline.fault.message if pipeline.fault else 'unknown'}")
        for index, frame in enumerate(frames, start=1):
            task = pipeline.submit_frame(frame)
            if task is not None:
                await task
            logger.debug("replay_frame | frame=%d/%d | session_wines=%d", index, len(frames), len(pipeline.session.wines))

        if location:
            pipeline.update_location(location)
        session = pipeline.session.model_copy(deep=True)
        if session_store is not None:
            session = pipeline.save_session(location)
        return session
    finally:
        await pipeline.close()
        if remote is not None:
            await remote.aclose()


def format_session(session: ScanSession) -> str:
    """Human-readable session summary."""
    lines = [
        f"{BOX_CHAR * 60}",
        f"  SCAN SESSION {session.id}",
        f"  {session.matched_count} wine(s) matched" + (f" at {session.location}" if session.location else ""),
        f"{BOX_CHAR * 60}",
    ]
    if not session.wines:
        lines.append("  No wines recognized.")
    for entry in session.wines:
        wine = entry.matched_wine
        if wine is None:
            continue
        vintage = entry.matched_vintage or wine.vintage
        title = wine.display_name + (f" {vintage}" if vintage else "")
        score = str(wine.score) if wine.score is not None else "--"
        star = f" {STAR_CHAR}" if entry.is_best_value else ""
        lines.append(f"  {title[:40]:<40} {score:>3}  {entry.match_confidence:>4.0%}  {entry.match_type.value}{star}")
        if entry.list_price is not None:
            lines.append(f"      list ${entry.list_price}  value={entry.value_indicator.value}")
    lines.append(f"{BOX_CHAR * 60}")
    return "\n".join(lines)


def _run_scan(args: argparse.Namespace, settings: ScannerSettings) -> None:
    wines_path = args.wines or settings.wines_path
    if not wines_path:
        raise ValueError("Provide --wines PATH or set WINELENS_WINES_PATH")
    if not os.path.exists(wines_path):
        raise FileNotFoundError(f"Wines file not found: {wines_path}")

    start = time.time()
    store = LocalWineStore()
    store.load(wines_path)
    frames = load_frames(args.frames)
    session_store = None
    if args.save or args.save_dir:
        session_store = SessionStore.from_settings(settings, args.save_dir)

    session = asyncio.run(replay_scan(frames, store, settings, session_store, args.location))
    logger.info(
        "scan_complete | frames=%d | wines=%d | duration_s=%.2f",
        len(frames),
        len(session.wines),
        time.time() - start,
    )
    if args.json:
        print(json.dumps(session.model_dump(mode="json"), indent=2))
    else:
        print(format_session(session))


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the wine list scanner."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG-level) logging")
    common.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )

    parser = argparse.ArgumentParser(
        prog="winelens",
        description="Wine list scanner: recognize wines on a printed list and match them to reviews.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s scan --wines data/wines_sample.csv --frames data/frames_sample.json\n"
            "  %(prog)s scan --wines wines.csv --frames frames.json --json --save-dir data/sessions\n"
            "  %(prog)s serve --port 8000\n"
        ),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", parents=[common], help="Replay recorded OCR frames through the scanner")
    scan.add_argument("--wines", "-w", type=str, help="Wines CSV or JSON cache (default: WINELENS_WINES_PATH)")
    scan.add_argument("--frames", "-f", type=str, required=True, help="Recorded frames JSON file (required)")
    scan.add_argument("--json", action="store_true", help="Print the session as JSON")
    scan.add_argument("--save", action="store_true", help="Save the finished session into the history (default dir: WINELENS_SESSION_DIR)")
    scan.add_argument("--save-dir", type=str, help="Save the finished session into this directory's history")
    scan.add_argument("--location", type=str, help="Restaurant or venue name stored with the session")

    serve = subparsers.add_parser("serve", parents=[common], help="Serve the wine store over HTTP")
    serve.add_argument("--port", "-p", type=int, default=None, help="Port (default: $PORT or 8000)")

    args = parser.parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_json,
    )

    try:
        settings = ScannerSettings.from_env()
        if args.command == "serve":
            logger.info("cli_mode | mode=serve | port=%s", args.port)
            run_api(args.port)
            return

        logger.info("cli_mode | mode=scan | wines=%s | frames=%s", args.wines, args.frames)
        _run_scan(args, settings)
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except (ValueError, ValidationError) as exc:
        logger.error("cli_error | type=%s | error=%s", type(exc).__name__, exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()

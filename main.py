#!/usr/bin/env python3
"""
PitchInsight v1.0.0: main entry point.

    python3 main.py serve [--host H] [--port P]
    python3 main.py upload FILE --owner OWNER [--title T] [--wait]
    python3 main.py status VIDEO_ID --owner OWNER
    python3 main.py retry VIDEO_ID --owner OWNER
    python3 main.py watch VIDEO_ID --owner OWNER [--timeout S]
    python3 main.py transcribe VIDEO_ID
    python3 main.py analyze VIDEO_ID
    python3 main.py diagnose

With the local storage backend, `upload` needs `serve` running at
public_base_url: the worker downloads media through its /media route.
"""

import argparse
import json
import logging
import logging.handlers
import sys
import traceback
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pitchinsight.core.constants import APP_NAME, APP_VERSION, LOG_DIR  # noqa: E402
from pitchinsight.core.error_codes import PipelineError  # noqa: E402

LOG_FILE = LOG_DIR / "app.log"

logger = logging.getLogger("pitchinsight")


def setup_logging(verbose: bool = False):
    """Log to <app support>/logs/app.log and stderr."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.handlers.RotatingFileHandler(LOG_FILE, maxBytes=5 * 1024 * 1024,
                                                 backupCount=3, encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )


def _print_json(data):
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


# ── Commands ──────────────────────────────────────────────────────────

def cmd_serve(args) -> int:
    import uvicorn
    from pitchinsight.api.server import create_app
    from pitchinsight.core.services import build_services

    app = create_app(build_services(threaded=True))
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


def cmd_upload(args) -> int:
    from pitchinsight.client.capture import CaptureUploadClient
    from pitchinsight.client.status_sync import StatusSyncClient, StatusView
    from pitchinsight.core.diagnostics import check_media_server
    from pitchinsight.core.models_sqlite import Session
    from pitchinsight.core.services import build_services

    services = build_services(threaded=True)
    session = Session(owner_id=args.owner)
    media_server = check_media_server(services.config)
    if media_server["required"] and not media_server["reachable"]:
        logger.warning(
            "No server reachable at %s (%s); transcription will fail to download the "
            "video. Start `serve` first or use the s3 storage backend.",
            media_server["base_url"], media_server["error"])
    try:
        record = CaptureUploadClient(services).upload_file(
            session, Path(args.file), title=args.title, description=args.description)
        print(f"Uploaded video {record.id} ({record.storage_path})")
        if args.wait:
            record = StatusSyncClient(services).wait_for_terminal(
                session, record.id, timeout=args.timeout)
            services.dispatcher.wait_idle(args.timeout)
            record = services.db.get_video(record.id)
            _print_json(asdict(StatusView.from_record(record)))
    finally:
        services.close()
    return 0


def cmd_status(args) -> int:
    from pitchinsight.client.status_sync import StatusSyncClient
    from pitchinsight.core.models_sqlite import Session
    from pitchinsight.core.services import build_services

    services = build_services(threaded=False)
    try:
        client = StatusSyncClient(services)
        session = Session(owner_id=args.owner)
        if args.full:
            _print_json(client.get(session, args.video_id).to_dict())
        else:
            _print_json(asdict(client.view(session, args.video_id)))
    finally:
        services.close()
    return 0


def cmd_retry(args) -> int:
    from pitchinsight.client.status_sync import StatusSyncClient
    from pitchinsight.core.models_sqlite import Session
    from pitchinsight.core.services import build_services

    services = build_services(threaded=False)
    try:
        client = StatusSyncClient(services)
        session = Session(owner_id=args.owner)
        client.retry(session, args.video_id, wait=True)
        _print_json(asdict(client.view(session, args.video_id)))
    finally:
        services.close()
    return 0


def cmd_watch(args) -> int:
    import threading
    from pitchinsight.client.status_sync import StatusSyncClient, StatusView
    from pitchinsight.core.constants import TERMINAL_STATUSES
    from pitchinsight.core.models_sqlite import Session
    from pitchinsight.core.services import build_services

    services = build_services(threaded=False)
    finished = threading.Event()

    def show(record):
        view = StatusView.from_record(record)
        line = f"{datetime.now():%H:%M:%S}  {view.video_id}  {view.label}"
        if view.error_message:
            line += f"  ({view.error_message})"
        print(line, flush=True)
        if record.status in TERMINAL_STATUSES:
            finished.set()

    try:
        watch = StatusSyncClient(services).subscribe(
            Session(owner_id=args.owner), args.video_id, show)
        try:
            if not finished.wait(args.timeout):
                raise TimeoutError(f"Video {args.video_id} did not finish within {args.timeout}s")
        finally:
            watch.stop()
    finally:
        services.close()
    return 0


def _cmd_invoke(args, handler) -> int:
    from pitchinsight.core.pipeline import Pipeline
    from pitchinsight.core.services import build_services

    services = build_services(threaded=False)
    try:
        status, body = handler(Pipeline(services), {"video_id": args.video_id})
        _print_json(body)
    finally:
        services.close()
    return 0 if status == 200 else 1


def cmd_transcribe(args) -> int:
    from pitchinsight.api.handlers import invoke_transcription
    return _cmd_invoke(args, invoke_transcription)


def cmd_analyze(args) -> int:
    from pitchinsight.api.handlers import invoke_analysis
    return _cmd_invoke(args, invoke_analysis)


def cmd_diagnose(args) -> int:
    from pitchinsight.core.diagnostics import get_diagnostics
    _print_json(get_diagnostics())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pitchinsight",
                                     description=f"{APP_NAME} v{APP_VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="Run the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser(
        "upload", help="Upload a video file and start transcription",
        description="Upload a video file and start transcription. With the local "
                    "storage backend the worker downloads the file from the "
                    "server at public_base_url, so run `serve` first.")
    p.add_argument("file")
    p.add_argument("--owner", required=True)
    p.add_argument("--title")
    p.add_argument("--description")
    p.add_argument("--wait", action="store_true", help="Wait for the pipeline to finish")
    p.add_argument("--timeout", type=float, default=600)
    p.set_defaults(func=cmd_upload)

    p = sub.add_parser("status", help="Show the status of a video")
    p.add_argument("video_id")
    p.add_argument("--owner", required=True)
    p.add_argument("--full", action="store_true", help="Print the whole record")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("retry", help="Retry a failed transcription")
    p.add_argument("video_id")
    p.add_argument("--owner", required=True)
    p.set_defaults(func=cmd_retry)

    p = sub.add_parser("watch", help="Follow status changes until a terminal status")
    p.add_argument("video_id")
    p.add_argument("--owner", required=True)
    p.add_argument("--timeout", type=float, default=None)
    p.set_defaults(func=cmd_watch)

    p = sub.add_parser("transcribe", help="Run the transcription function for a video")
    p.add_argument("video_id")
    p.set_defaults(func=cmd_transcribe)

    p = sub.add_parser("analyze", help="Run the analysis function for a video")
    p.add_argument("video_id")
    p.set_defaults(func=cmd_analyze)

    p = sub.add_parser("diagnose", help="Print configuration and system checks")
    p.set_defaults(func=cmd_diagnose)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s (%s)", APP_NAME, APP_VERSION,
                datetime.now().isoformat(), args.command)
    logger.info("Python: %s", sys.executable)
    logger.info("=" * 60)

    try:
        return args.func(args)
    except PipelineError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"Error: {e.user_message()}", file=sys.stderr)
        return 1
    except TimeoutError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        print(f"Fatal error: {error_msg}\nCheck logs at: {LOG_FILE}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python
"""Command line entry point for NoteAtlas."""
import argparse
import atexit
import json
import logging
import os
import sys
from pathlib import Path

from noteatlas import __version__, observability
from noteatlas.config import config
from noteatlas.exceptions import AtlasError
from noteatlas.heatmap.raster import placeholder, save_png
from noteatlas.models.db_models import init_db
from noteatlas.models.schema import CanvasSize, ViewTransform
from noteatlas.observability import configure_logging
from noteatlas.services.graph_service import GraphService
from noteatlas.services.heatmap_service import HeatmapService
from noteatlas.storage.note_repository import NoteRepository


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="noteatlas", description="Knowledge heat map for your notes"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTEATLAS_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTEATLAS_LOG_LEVEL", "INFO")
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for rotating log files (default ~/.noteatlas/logs)",
        type=str,
        default=os.environ.get("NOTEATLAS_LOG_DIR")
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("compute-positions", help="Project embeddings and store positions")
    sub.add_parser("status", help="Show note counts, stale positions and metrics")
    sub.add_parser("rebuild-graph", help="Recompute related notes for every note")

    render = sub.add_parser("render", help="Render the heat map to a PNG")
    render.add_argument("--out", required=True, help="Output PNG path")
    render.add_argument("--width", type=int, default=800)
    render.add_argument("--height", type=int, default=600)
    render.add_argument("--zoom", type=float, default=1.0)
    render.add_argument("--pan-x", type=float, default=0.0)
    render.add_argument("--pan-y", type=float, default=0.0)
    return parser


def update_config(args) -> None:
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)


def _save_metrics_on_exit():
    """Save metrics to disk on shutdown."""
    try:
        if observability.metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except OSError as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def cmd_compute_positions(repository: NoteRepository, args) -> int:
    result = HeatmapService(repository).compute_positions()
    print(f"Computed {result.computed} positions ({result.errors} errors)")
    if result.used_fallback:
        print("Projection fell back to the first-two-dimension layout")
    return 0 if result.errors == 0 else 1


def cmd_status(repository: NoteRepository, args) -> int:
    status = {
        "notes": repository.count_notes(),
        "embedded": repository.count_embedded(),
        "positioned": len(repository.list_positioned()),
        "needing_position_update": repository.count_needing_position_update(),
        "metrics": observability.metrics.get_summary(),
        "operations": observability.metrics.get_metrics(),
    }
    print(json.dumps(status, indent=2, default=str))
    return 0


def cmd_rebuild_graph(repository: NoteRepository, args) -> int:
    processed, errors = GraphService(repository).rebuild_graph()
    print(f"Processed {processed} notes ({errors} errors)")
    return 0 if errors == 0 else 1


def cmd_render(repository: NoteRepository, args) -> int:
    canvas = CanvasSize(args.width, args.height)
    transform = ViewTransform(zoom=args.zoom, pan_x=args.pan_x, pan_y=args.pan_y)
    buffer = HeatmapService(repository).render(canvas, transform)
    if buffer is None:
        print("No notes have positions yet; run compute-positions first")
        buffer = placeholder(canvas)
    path = save_png(buffer, args.out)
    print(f"Wrote {path}")
    return 0


COMMANDS = {
    "compute-positions": cmd_compute_positions,
    "status": cmd_status,
    "rebuild-graph": cmd_rebuild_graph,
    "render": cmd_render,
}


def main(argv=None) -> int:
    """Run a NoteAtlas command."""
    args = build_parser().parse_args(argv)
    update_config(args)

    # Configure logging (console + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        configure_logging(log_dir=args.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")

    logger = logging.getLogger(__name__)
    atexit.register(_save_metrics_on_exit)

    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        repository = NoteRepository(init_db())
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        return 1

    try:
        return COMMANDS[args.command](repository, args)
    except AtlasError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())

"""Logging and run metrics for NoteAtlas.

Every traced operation (projection, the position batch, rendering, semantic
search) lands in one MetricsCollector. Besides timing and error rates the
collector keeps the heat-map counters that matter when a map looks wrong:
how many points went through, how often the projection fell back to the
first-two-dimension layout, and how often the density layer was rebuilt
instead of reused.
"""
import functools
import json
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".noteatlas" / "logs"
DEFAULT_METRICS_FILE = Path.home() / ".noteatlas" / "metrics.json"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

F = TypeVar('F', bound=Callable[..., Any])


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Send the ``noteatlas`` logger hierarchy to a rotating log file.

    Args:
        log_dir: Directory for ``noteatlas.log``. Defaults to ~/.noteatlas/logs/
        level: Level for the logger and its handlers.
        max_bytes: Size at which the file rotates (10 MB).
        backup_count: Rotated files to keep.
        console: Also echo to stderr, unless a console handler is already installed.

    Returns:
        The log directory.
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / "noteatlas.log"

    atlas_logger = logging.getLogger("noteatlas")
    atlas_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    file_handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    atlas_logger.addHandler(file_handler)

    has_console = any(
        type(h) is logging.StreamHandler for h in atlas_logger.handlers
    )
    if console and not has_console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        atlas_logger.addHandler(console_handler)

    atlas_logger.info("Logging to %s (rotate at %d bytes, keep %d)", log_file, max_bytes, backup_count)
    return log_path


@dataclass
class OperationMetrics:
    """Running totals for one operation name."""
    count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_duration_ms: float = 0.0
    min_duration_ms: Optional[float] = None
    max_duration_ms: float = 0.0
    # Heat-map counters
    points_total: int = 0
    max_points: int = 0
    fallback_count: int = 0
    layer_builds: int = 0
    last_error: Optional[str] = None
    last_error_time: Optional[str] = None


_PERSISTED = [f.name for f in fields(OperationMetrics)]


class MetricsCollector:
    """Thread-safe per-operation metrics, persisted as JSON.

    Args:
        metrics_file: Where totals are saved and reloaded from.
            Defaults to ~/.noteatlas/metrics.json
        auto_save_interval: Save after this many recorded operations
            (0 disables auto-save).
    """

    def __init__(
        self,
        metrics_file: Optional[Union[str, Path]] = None,
        auto_save_interval: int = 100,
    ):
        self._metrics: Dict[str, OperationMetrics] = defaultdict(OperationMetrics)
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)
        self._metrics_file = Path(metrics_file) if metrics_file else DEFAULT_METRICS_FILE
        self._auto_save_interval = auto_save_interval
        self._unsaved = 0
        self._load()

    def record_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool,
        error: Optional[str] = None,
        points: Optional[int] = None,
        used_fallback: bool = False,
        layer_built: bool = False,
    ) -> None:
        """Add one run of ``operation`` to its totals.

        Args:
            operation: Name such as 'project', 'compute_positions' or 'render'.
            duration_ms: Wall time of the run.
            success: False when the run raised.
            error: Message of the exception, for failed runs.
            points: Number of notes/points the run handled, if known.
            used_fallback: The projection fell back to the raw-dimension layout.
            layer_built: The renderer rebuilt its density layer.
        """
        with self._lock:
            m = self._metrics[operation]
            m.count += 1
            m.total_duration_ms += duration_ms
            if m.min_duration_ms is None or duration_ms < m.min_duration_ms:
                m.min_duration_ms = duration_ms
            m.max_duration_ms = max(m.max_duration_ms, duration_ms)

            if success:
                m.success_count += 1
            else:
                m.error_count += 1
                m.last_error = error
                m.last_error_time = datetime.now(timezone.utc).isoformat()

            if points is not None:
                m.points_total += points
                m.max_points = max(m.max_points, points)
            if used_fallback:
                m.fallback_count += 1
            if layer_built:
                m.layer_builds += 1

            self._unsaved += 1
            if 0 < self._auto_save_interval <= self._unsaved:
                self._save_unlocked()

    def get_metrics(self) -> Dict[str, Dict[str, Any]]:
        """Snapshot of every operation's totals plus derived averages."""
        with self._lock:
            result = {}
            for op, m in self._metrics.items():
                runs = m.count or 1
                result[op] = {
                    'count': m.count,
                    'success_count': m.success_count,
                    'error_count': m.error_count,
                    'success_rate': m.success_count / m.count if m.count else 0,
                    'avg_duration_ms': round(m.total_duration_ms / runs, 2),
                    'min_duration_ms': round(m.min_duration_ms or 0.0, 2),
                    'max_duration_ms': round(m.max_duration_ms, 2),
                    'points_total': m.points_total,
                    'avg_points': round(m.points_total / runs, 2),
                    'max_points': m.max_points,
                    'fallback_count': m.fallback_count,
                    'layer_builds': m.layer_builds,
                    'last_error': m.last_error,
                    'last_error_time': m.last_error_time,
                }
            return result

    def get_summary(self) -> Dict[str, Any]:
        """Totals across all operations, shown by ``noteatlas status``."""
        with self._lock:
            ops = list(self._metrics.values())
            total = sum(m.count for m in ops)
            succeeded = sum(m.success_count for m in ops)
            return {
                'uptime_seconds': (datetime.now(timezone.utc) - self._start_time).total_seconds(),
                'total_operations': total,
                'total_success': succeeded,
                'total_errors': sum(m.error_count for m in ops),
                'overall_success_rate': succeeded / total if total else 1.0,
                'points_processed': sum(m.points_total for m in ops),
                'fallback_projections': sum(m.fallback_count for m in ops),
                'layer_builds': sum(m.layer_builds for m in ops),
                'operations_tracked': list(self._metrics),
            }

    def _load(self) -> None:
        if not self._metrics_file.exists():
            return
        try:
            data = json.loads(self._metrics_file.read_text(encoding="utf-8"))
            if "start_time" in data:
                self._start_time = datetime.fromisoformat(data["start_time"])
            for op_name, saved in data.get("operations", {}).items():
                m = self._metrics[op_name]
                for name in _PERSISTED:
                    if name in saved:
                        setattr(m, name, saved[name])
        except (OSError, json.JSONDecodeError, AttributeError, ValueError) as e:
            logger.warning("Ignoring unreadable metrics file %s: %s", self._metrics_file, e)
            self._metrics.clear()
            return
        logger.debug("Loaded metrics from %s", self._metrics_file)

    def _save_unlocked(self) -> bool:
        data = {
            "start_time": self._start_time.isoformat(),
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "operations": {
                op: {name: getattr(m, name) for name in _PERSISTED}
                for op, m in self._metrics.items()
            },
        }
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self._metrics_file.with_suffix(".tmp")
            temp_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
            temp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error("Failed to save metrics to %s: %s", self._metrics_file, e)
            return False
        self._unsaved = 0
        return True

    def save_metrics(self) -> bool:
        """Write totals to disk atomically. Returns False if the write failed."""
        with self._lock:
            return self._save_unlocked()


# Shared collector; tests swap it out with monkeypatch
metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context) -> Iterator[Dict[str, Any]]:
    """Time a block and record it under ``operation``.

    The yielded dict collects results for the metrics record: set
    ``points``, ``used_fallback`` or ``layer_built`` on it and they are
    counted; any other keys only appear in the debug log.

        with timed_operation("render", width=800) as op:
            op["points"] = len(points)
    """
    correlation_id = uuid.uuid4().hex[:8]
    op: Dict[str, Any] = {}
    context_str = ', '.join(f'{k}={v}' for k, v in context.items())
    logger.debug("[%s] START %s (%s)", correlation_id, operation, context_str)

    start = time.perf_counter()
    error_msg = None
    try:
        yield op
    except Exception as e:
        error_msg = str(e)
        raise
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.record_operation(
            operation,
            duration_ms,
            error_msg is None,
            error_msg,
            points=op.get('points'),
            used_fallback=bool(op.get('used_fallback')),
            layer_built=bool(op.get('layer_built')),
        )
        status = 'OK' if error_msg is None else f'ERROR: {error_msg}'
        result_str = ', '.join(f'{k}={v}' for k, v in op.items())
        logger.debug(
            "[%s] END %s (%.2fms) [%s] %s",
            correlation_id, operation, duration_ms, status, result_str,
        )


def traced(
    operation_name: Optional[str] = None,
    summarize: Optional[Callable[[Any], Dict[str, Any]]] = None,
) -> Callable[[F], F]:
    """Decorator form of timed_operation.

    Args:
        operation_name: Metrics key; defaults to the function name.
        summarize: Maps the return value to result fields (``points``,
            ``used_fallback``...). Without it, sized results record
            ``result_count``.
    """
    def decorator(func: F) -> F:
        op_name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            context = {}
            if kwargs.get('query'):
                context['query'] = kwargs['query'][:50]
            with timed_operation(op_name, **context) as op:
                result = func(*args, **kwargs)
                if summarize is not None:
                    op.update(summarize(result))
                elif hasattr(result, '__len__'):
                    op['result_count'] = len(result)
                return result

        return wrapper  # type: ignore
    return decorator


class StructuredLogger:
    """Prefixes messages with a component tag and appends key=value pairs."""

    def __init__(self, component: str):
        self._logger = logging.getLogger(f"noteatlas.{component}")
        self._component = component

    def _format(self, msg: str, extra: Dict[str, Any]) -> str:
        if not extra:
            return f"[{self._component}] {msg}"
        pairs = ' '.join(f'{k}={v}' for k, v in extra.items())
        return f"[{self._component}] {msg} | {pairs}"

    def debug(self, msg: str, **extra) -> None:
        self._logger.debug(self._format(msg, extra))

    def warning(self, msg: str, **extra) -> None:
        self._logger.warning(self._format(msg, extra))


def get_logger(component: str) -> StructuredLogger:
    """Structured logger for ``noteatlas.<component>``."""
    return StructuredLogger(component)

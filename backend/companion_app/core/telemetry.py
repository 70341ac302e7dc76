from __future__ import annotations

import json
import logging
import statistics
import threading
import time
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from companion_app.core.config import settings


_LOGGER = logging.getLogger("companion")
_METRICS_LOCK = threading.Lock()
_NOISY_COUNTERS: Dict[str, int] = {}
_PRETTY_COLOR_ENABLED = False

_STATUS_LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
}

_STATUS_TOKENS = {
    "error": ("ERR", "\033[31m"),
    "warning": ("WARN", "\033[33m"),
    "ok": ("OK", "\033[32m"),
}
_RESET = "\033[0m"
_BOLD = "\033[1m"
_CYAN = "\033[36m"
_GREY = "\033[90m"

# Keys rendered in their own console slot rather than among the details.
_HEADLINE_KEYS = {"call_id", "companion_id", "duration_ms", "status"}
_MAX_DETAIL_CHUNKS = 8


def _metric_file() -> Path:
    settings.DATA_ROOT.mkdir(parents=True, exist_ok=True)
    return settings.DATA_ROOT / "telemetry_events.jsonl"


def _log_file() -> Path:
    return settings.DATA_ROOT / "service.log"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_sampled_out(action: str, status: str) -> bool:
    """Noisy ok-status actions only reach the console once every N events."""
    if status != "ok" or action not in set(settings.LOG_NOISY_ACTIONS or ()):
        return False
    every_n = settings.LOG_NOISY_EVENTS_EVERY_N
    if every_n <= 0:
        return True
    with _METRICS_LOCK:
        count = _NOISY_COUNTERS.get(action, 0) + 1
        _NOISY_COUNTERS[action] = count
    return count % every_n != 0


def _paint(text: str, code: str) -> str:
    if settings.LOG_PRETTY and _PRETTY_COLOR_ENABLED:
        return f"{code}{text}{_RESET}"
    return text


def _clip(value: Any, limit: int = 140) -> str:
    if value is None:
        return "n/a"
    text = json.dumps(value, default=str) if isinstance(value, (dict, list, tuple)) else str(value)
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _render_console_entry(entry: Dict[str, Any]) -> str:
    label, color = _STATUS_TOKENS.get(str(entry.get("status", "ok")), _STATUS_TOKENS["ok"])
    name = f"{_paint(str(entry.get('component', 'unknown')), _BOLD)}/{_paint(str(entry.get('action', 'event')), _CYAN)}"
    parts = [name, _paint(label, color)]

    for key, prefix, limit in (("call_id", "call", 32), ("companion_id", "companion", 24)):
        if entry.get(key):
            parts.append(f"{prefix}={_clip(entry[key], limit)}")
    if entry.get("duration_ms") is not None:
        parts.append(f"dur={entry['duration_ms']}ms")
    if entry.get("error") is not None:
        parts.append(_paint(f"error={_clip(entry['error'], 220)}", _STATUS_TOKENS["error"][1]))

    details = entry.get("details") if isinstance(entry.get("details"), dict) else {}
    shown = [(key, value) for key, value in details.items() if key not in _HEADLINE_KEYS]
    rendered = [f"{key}={_clip(value, 80)}" for key, value in shown[:_MAX_DETAIL_CHUNKS]]
    if len(shown) > _MAX_DETAIL_CHUNKS:
        rendered.append("...")
    if rendered:
        parts.append(" | ".join(rendered))

    stamp = str(entry.get("timestamp") or entry.get("started_at") or _timestamp())[:19]
    return f"{_paint(stamp, _GREY)} | " + " | ".join(parts)


def configure_logging() -> None:
    global _PRETTY_COLOR_ENABLED
    if getattr(_LOGGER, "_companion_configured", False):
        return

    log_level = getattr(logging, settings.LOG_LEVEL, logging.INFO)
    _LOGGER.setLevel(log_level)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        "%Y-%m-%dT%H:%M:%S%z",
    )

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)
    stream_handler.setLevel(log_level)
    if settings.LOG_COLOR is None:
        _PRETTY_COLOR_ENABLED = bool(getattr(stream_handler.stream, "isatty", lambda: False)())
    else:
        _PRETTY_COLOR_ENABLED = settings.LOG_COLOR
    _LOGGER.addHandler(stream_handler)

    log_path = _log_file()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(fmt)
    file_handler.setLevel(log_level)
    _LOGGER.addHandler(file_handler)

    _LOGGER._companion_configured = True  # type: ignore[attr-defined]


def _append_jsonl(entry: Dict[str, Any]) -> None:
    with _METRICS_LOCK:
        with open(_metric_file(), "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str))
            f.write("\n")


def _emit(entry: Dict[str, Any]) -> None:
    _append_jsonl(entry)
    status = str(entry.get("status", "ok"))
    if _is_sampled_out(str(entry.get("action", "")), status):
        return
    _LOGGER.log(_STATUS_LEVELS.get(status, logging.INFO), _render_console_entry(entry))


def log_event(
    component: str,
    action: str,
    *,
    status: str = "ok",
    duration_ms: Optional[float] = None,
    call_id: Optional[str] = None,
    companion_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    entry: Dict[str, Any] = {
        "timestamp": _timestamp(),
        "component": component,
        "action": action,
        "status": status,
        "call_id": call_id,
        "companion_id": companion_id,
        "details": details or {},
    }
    if duration_ms is not None:
        entry["duration_ms"] = round(duration_ms, 3)
    _emit(entry)


@contextmanager
def timed_step(
    component: str,
    action: str,
    *,
    call_id: Optional[str] = None,
    companion_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    started = time.perf_counter()
    entry: Dict[str, Any] = {
        "started_at": _timestamp(),
        "component": component,
        "action": action,
        "status": "ok",
        "call_id": call_id,
        "companion_id": companion_id,
        "details": details or {},
    }
    try:
        yield entry["details"]
    except Exception as exc:
        entry["status"] = "error"
        entry["error"] = f"{type(exc).__name__}: {exc}"
        raise
    finally:
        entry["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 3)
        _emit(entry)


def get_metric_events(
    limit: int = 100,
    *,
    component: Optional[str] = None,
    action: Optional[str] = None,
    call_id: Optional[str] = None,
    companion_id: Optional[str] = None,
) -> list[Dict[str, Any]]:
    path = _metric_file()
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as f:
        rows = deque(f, maxlen=limit)

    filters = {
        "component": component,
        "action": action,
        "call_id": call_id,
        "companion_id": companion_id,
    }
    events: list[Dict[str, Any]] = []
    for line in rows:
        line = line.strip()
        if not line:
            continue
        event = json.loads(line)
        if all(expected is None or event.get(key) == expected for key, expected in filters.items()):
            events.append(event)
    return events


def _percentile(values: Sequence[float], percentile: float) -> Optional[float]:
    if not values:
        return None
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    idx = (len(ordered) - 1) * percentile
    lower = int(idx)
    upper = min(lower + 1, len(ordered) - 1)
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (idx - lower)


def _latency_stats(durations: Sequence[float]) -> Dict[str, Optional[float]]:
    return {
        "avg_ms": round(statistics.mean(durations), 3) if durations else None,
        "min_ms": min(durations) if durations else None,
        "max_ms": max(durations) if durations else None,
        "p50_ms": _percentile(durations, 0.50),
        "p95_ms": _percentile(durations, 0.95),
        "p99_ms": _percentile(durations, 0.99),
    }


def summarize_events(
    limit: int = 500,
    *,
    component: Optional[str] = None,
    action: Optional[str] = None,
    call_id: Optional[str] = None,
    companion_id: Optional[str] = None,
) -> Dict[str, Any]:
    events = get_metric_events(
        limit=limit,
        component=component,
        action=action,
        call_id=call_id,
        companion_id=companion_id,
    )
    if not events:
        return {"event_count": 0, "components": {}, "actions": {}}

    groups: Dict[str, Dict[str, Dict[str, Any]]] = {"components": {}, "actions": {}}
    durations: list[float] = []

    for event in events:
        status = str(event.get("status", "ok"))
        try:
            duration_ms = float(event["duration_ms"]) if event.get("duration_ms") is not None else None
        except (TypeError, ValueError):
            duration_ms = None
        if duration_ms is not None:
            durations.append(duration_ms)

        for group_name, key in (
            ("components", str(event.get("component", "unknown"))),
            ("actions", str(event.get("action", "unknown"))),
        ):
            stats = groups[group_name].setdefault(
                key, {"count": 0, "ok": 0, "warning": 0, "error": 0, "durations_ms": []}
            )
            stats["count"] += 1
            stats[status if status in ("warning", "error") else "ok"] += 1
            if duration_ms is not None:
                stats["durations_ms"].append(duration_ms)

    for group in groups.values():
        for stats in group.values():
            stats.update(_latency_stats(stats.pop("durations_ms")))

    return {
        "event_count": len(events),
        "component_count": len(groups["components"]),
        "action_count": len(groups["actions"]),
        "slowest_events": sorted(
            (event for event in events if event.get("duration_ms") is not None),
            key=lambda item: item.get("duration_ms", 0),
            reverse=True,
        )[:20],
        "durations_ms": {"count": len(durations), **_latency_stats(durations)},
        "components": groups["components"],
        "actions": groups["actions"],
    }

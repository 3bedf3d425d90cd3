from __future__ import annotations

import json
import logging
from collections import Counter
from threading import Lock
from typing import Any


logger = logging.getLogger("leadsync")

_metrics_lock = Lock()
_metrics_counter: Counter[str] = Counter()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logger.setLevel(level.upper())


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def metric_key(name: str, **labels: Any) -> str:
    """`name|label=value,...` with labels sorted, so one counter per label set."""
    if not labels:
        return name
    ordered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}|{ordered}"


def incr_metric(name: str, value: int = 1, **labels: Any) -> None:
    key = metric_key(name, **{k: _normalize(v) for k, v in labels.items()})
    with _metrics_lock:
        _metrics_counter[key] += value


def metrics_snapshot(prefix: str | None = None) -> dict[str, int]:
    with _metrics_lock:
        if not prefix:
            return dict(_metrics_counter)
        return {key: value for key, value in _metrics_counter.items() if key.startswith(prefix)}


def reset_metrics() -> None:
    with _metrics_lock:
        _metrics_counter.clear()


def persist_metrics_snapshot(
    *,
    supabase_client: Any,
    source: str,
    request_id: str | None = None,
    queues: list[dict[str, Any]] | None = None,
    reset_after_persist: bool = False,
) -> bool:
    """Store the counters (and optionally lane stats) in `metric_snapshots`."""
    snapshot = metrics_snapshot()
    row = {
        "source": source,
        "request_id": request_id,
        "counters": snapshot,
        "queues": _normalize(queues or []),
    }
    try:
        supabase_client.table("metric_snapshots").insert(row).execute()
    except Exception as exc:
        log_event(
            "metrics_snapshot_persist_failed",
            level=logging.WARNING,
            request_id=request_id,
            source=source,
            error=str(exc),
        )
        return False

    log_event(
        "metrics_snapshot_persisted",
        request_id=request_id,
        source=source,
        counter_count=len(snapshot),
        lane_count=len(row["queues"]),
    )
    if reset_after_persist:
        reset_metrics()
    return True


def log_event(
    event: str,
    *,
    level: int = logging.INFO,
    request_id: str | None = None,
    trace_id: str | None = None,
    **fields: Any,
) -> None:
    payload: dict[str, Any] = {"event": event}
    if request_id:
        payload["request_id"] = request_id
    if trace_id:
        payload["trace_id"] = trace_id
    for key, value in fields.items():
        if value is None:
            continue
        payload[key] = _normalize(value)
    # accented text stays unescaped
    logger.log(level, json.dumps(payload, sort_keys=True, ensure_ascii=False))

import json
import os
import time
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from cubular_client.infra.logger import logger


def _metrics_log_path() -> Optional[Path]:
    """Return the JSONL path for request latency metrics, or None when disabled."""
    log_path = os.getenv("REQUEST_LATENCY_LOG")
    if not log_path:
        return None
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def record_latency_metric(
    label: str,
    stages: Iterable[Tuple[str, float]],
    total_seconds: float,
    extra: Dict[str, object] | None = None,
) -> None:
    """Persist a latency metric as JSON Lines for offline analysis."""
    try:
        log_path = _metrics_log_path()
        if log_path is None:
            return

        record = {
            "timestamp": time.time(),
            "label": label,
            "total_ms": round(total_seconds * 1000, 3),
            "stages_ms": {name: round(duration * 1000, 3) for name, duration in stages},
        }
        if extra:
            record.update(extra)

        with log_path.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(record))
            fp.write("\n")
    except Exception as exc:
        logger.getChild("Metrics").warning("Failed to record latency metric: %s", exc)

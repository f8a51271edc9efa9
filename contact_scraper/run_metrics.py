"""
Run state for one enrichment run.

The enrichment service owns one instance and passes it down explicitly.
Counters and timings are plain dicts: the event loop is single-threaded, so
concurrent enrichments update them without locks.
"""

import json
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _stamp() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


@dataclass
class RunMetrics:
    source: str = "arbeitsagentur"
    run_id: str = field(default_factory=_stamp)
    started_at: str = field(default_factory=_utc_now_iso)
    started_monotonic: float = field(default_factory=time.monotonic, repr=False)
    ended_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    counters: Dict[str, int] = field(default_factory=dict)
    gauges: Dict[str, Any] = field(default_factory=dict)
    timings: Dict[str, List[float]] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)
    output_path: Optional[Path] = None

    def inc(self, key: str, amount: int = 1) -> None:
        if key:
            self.counters[key] = self.counters.get(key, 0) + int(amount)

    def set_gauge(self, key: str, value: Any) -> None:
        if key:
            self.gauges[key] = value

    def observe(self, key: str, seconds: float) -> None:
        """Record one duration sample, e.g. a page visit or a solver round-trip."""
        if key:
            self.timings.setdefault(key, []).append(round(float(seconds), 3))

    @contextmanager
    def timed(self, key: str) -> Iterator[None]:
        start = time.monotonic()
        try:
            yield
        finally:
            self.observe(key, time.monotonic() - start)

    def record_event(self, kind: str, **data: Any) -> None:
        if not kind:
            return
        event: Dict[str, Any] = {"t": _utc_now_iso(), "kind": kind}
        event.update({k: v for k, v in data.items() if v is not None})
        self.events.append(event)

    def record_result(self, result: Any) -> None:
        """Count one finished enrichment by status, confidence and challenge outcome."""
        self.inc(f"status_{result.status.value}")
        self.inc(f"confidence_{result.confidence.value}")
        if result.challenge_outcome:
            self.inc(f"challenge_{result.challenge_outcome}")
        if result.has_real_contact:
            self.inc("real_contacts")
        elif result.external_link:
            self.inc("external_links")
        if result.error:
            self.record_event("job_failed", job_id=result.job.id, error=result.error)

    def finish(self) -> None:
        if self.ended_at is None:
            self.ended_at = _utc_now_iso()
            self.duration_seconds = max(time.monotonic() - self.started_monotonic, 0.0)

    def timing_summary(self) -> Dict[str, Dict[str, float]]:
        return {
            key: {
                "count": len(samples),
                "avg": round(sum(samples) / len(samples), 3),
                "max": max(samples),
            }
            for key, samples in self.timings.items()
            if samples
        }

    def to_dict(self, *, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        duration = self.duration_seconds
        if duration is None:
            duration = max(time.monotonic() - self.started_monotonic, 0.0)
        payload: Dict[str, Any] = {
            "source": self.source,
            "run_id": self.run_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at or _utc_now_iso(),
            "duration_seconds": round(duration, 3),
            "counters": dict(self.counters),
        }
        optional = {
            "gauges": dict(self.gauges),
            "timings": self.timing_summary(),
            "events": list(self.events),
            "extra": dict(extra or {}),
        }
        payload.update({k: v for k, v in optional.items() if v})
        if self.output_path is not None:
            payload["output_path"] = str(self.output_path)
        return payload

    def write_json(self, *, template: str, extra: Optional[Dict[str, Any]] = None) -> Path:
        """Write the run summary; `{timestamp}` in the template is filled in."""
        path = Path((template or "output/run_metrics_{timestamp}.json").replace("{timestamp}", _stamp()))
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(extra=extra), indent=2, sort_keys=True), encoding="utf-8")
        self.output_path = path
        return path

"""
Output Writer - loads job input and exports enrichment results to JSON, JSONL and Markdown
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from contact_scraper.models import EnrichmentResult, JobRecord

logger = logging.getLogger(__name__)


def load_jobs(path: Path) -> List[JobRecord]:
    """Read job records from a JSON file (a list, or an object with a "jobs" list)."""
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)

    if isinstance(payload, dict):
        payload = payload.get("jobs") or payload.get("stellenangebote") or []
    if not isinstance(payload, list):
        raise ValueError(f"Unexpected job file shape in {path}: expected a list of jobs")

    jobs: List[JobRecord] = []
    for index, item in enumerate(payload):
        try:
            jobs.append(JobRecord.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping invalid job #%s in %s: %s", index, path, exc.errors()[0].get("msg"))
    logger.info("Loaded %s jobs from %s", len(jobs), path)
    return jobs


class ResultSink(Protocol):
    """Anything that accepts enrichment results as they complete (spreadsheet, CRM, file)."""

    def write(self, result: EnrichmentResult) -> None:
        ...


class JsonlResultSink:
    """Appends one JSON record per enrichment result."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.written = 0

    def write(self, result: EnrichmentResult) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(result.to_record(), ensure_ascii=False) + "\n")
        self.written += 1


class OutputWriter:
    """Handles exporting enrichment results to various formats"""

    def __init__(self, config):
        self.config = config

    def _escape_md_cell(self, value: Optional[str]) -> str:
        return (value or "").replace("|", "\\|").replace("\n", " ").strip()

    def _truncate(self, text: str, max_len: int) -> str:
        value = (text or "").strip()
        if len(value) <= max_len:
            return value
        return value[: max_len - 3].rstrip() + "..."

    def _ensure_output_dir(self, path: Path) -> None:
        """Create output directory if it doesn't exist"""
        path.parent.mkdir(parents=True, exist_ok=True)

    def write_json(self, results: List[EnrichmentResult], stats: Dict[str, Any]) -> Path:
        """Export the run summary and every result to a JSON file"""
        output_path = self.config.get_output_path('json')
        self._ensure_output_dir(output_path)

        payload = {
            "generated_at": datetime.now().isoformat(),
            "stats": stats,
            "results": [r.to_record() for r in results],
        }
        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2, ensure_ascii=False, default=str)

        logger.info("JSON written: %s", output_path)
        print(f"💾 JSON saved: {output_path}")
        return output_path

    def write_markdown(self, results: List[EnrichmentResult], stats: Dict[str, Any]) -> Path:
        """Export a readable lead table to Markdown"""
        output_path = self.config.get_output_path('markdown')
        self._ensure_output_dir(output_path)

        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M')
        lines = [
            f"# Contact Enrichment {timestamp}\n",
            f"**Total Jobs:** {stats.get('total', len(results))}  ",
            f"**Real Contacts:** {stats.get('real_contacts_found', 0)} ({stats.get('real_contacts_rate', '0.0%')})  ",
            f"**External Links:** {stats.get('external_links_used', 0)}  ",
            f"**Failed:** {stats.get('failed', 0)}\n",
        ]

        if not results:
            lines.append("*No jobs enriched.*\n")
        else:
            cols = ["#", "Job", "Company", "Confidence", "Email", "Phone", "Link", "Status"]
            lines.append("| " + " | ".join(cols) + " |")
            lines.append("| " + " | ".join(["---"] * len(cols)) + " |")
            for i, r in enumerate(results, 1):
                title = self._truncate(r.job.title or r.job.id, 60)
                link = f"[open]({r.external_link})" if r.external_link else "-"
                row = [
                    str(i),
                    f"[{self._escape_md_cell(title)}]({r.job.detail_url})",
                    self._escape_md_cell(r.job.company or "-"),
                    r.confidence.value,
                    self._escape_md_cell(r.contact_email or "-"),
                    self._escape_md_cell(r.contact_phone or "-"),
                    link,
                    self._escape_md_cell(r.status.value if not r.error else f"{r.status.value}: {self._truncate(r.error, 40)}"),
                ]
                lines.append("| " + " | ".join(row) + " |")
            lines.append("")

        output_path.write_text("\n".join(lines), encoding="utf-8")
        logger.info("Markdown written: %s", output_path)
        print(f"📝 Markdown saved: {output_path}")
        return output_path

    def write_all(self, results: List[EnrichmentResult], stats: Dict[str, Any]) -> Dict[str, Path]:
        """Write all output formats"""
        return {
            'json': self.write_json(results, stats),
            'markdown': self.write_markdown(results, stats),
        }

import json
from datetime import datetime

import pytest

from contact_scraper.config_loader import ConfigLoader
from contact_scraper.enrichment import build_result, get_enrichment_stats
from contact_scraper.models import Contact, ContactConfidence, ContactSource, ContactType, JobRecord
from contact_scraper.output_writer import JsonlResultSink, OutputWriter, load_jobs
from contact_scraper.run_metrics import RunMetrics
from contact_scraper.scraper import ScrapeReport


def _result(job_id="10000-1234567890-S", title="Koch | Köchin (m/w/d)", email=None):
    job = JobRecord(refnr=job_id, titel=title, arbeitgeber="Gasthaus Linde")
    contacts = []
    if email:
        contacts.append(Contact(
            type=ContactType.EMAIL,
            value=email,
            confidence=ContactConfidence.HIGH,
            source=ContactSource.MAILTO_LINK,
        ))
    report = ScrapeReport(job_id=job_id, url=job.detail_url, contacts=contacts)
    return build_result(job, report, datetime.now())


def test_load_jobs_accepts_api_field_names(tmp_path):
    path = tmp_path / "jobs.json"
    path.write_text(json.dumps({
        "stellenangebote": [
            {"refnr": "10000-1111111111-S", "titel": "Lagerhelfer", "arbeitgeber": "Spedition Nord"},
            {"id": "10000-2222222222-S", "title": "Elektriker", "contact_email": "hr@elektro.de"},
            {"titel": "ohne Referenznummer"},
        ],
    }), encoding="utf-8")

    jobs = load_jobs(path)

    assert [j.id for j in jobs] == ["10000-1111111111-S", "10000-2222222222-S"]
    assert jobs[0].company == "Spedition Nord"
    assert jobs[1].has_existing_contact()


def test_load_jobs_rejects_unexpected_shape(tmp_path):
    path = tmp_path / "jobs.json"
    path.write_text('"just a string"', encoding="utf-8")

    with pytest.raises(ValueError):
        load_jobs(path)


def test_jsonl_sink_appends_one_record_per_result(tmp_path):
    sink = JsonlResultSink(tmp_path / "out" / "enriched.jsonl")

    sink.write(_result(email="info@linde.de"))
    sink.write(_result(job_id="10000-9999999999-S"))

    lines = (tmp_path / "out" / "enriched.jsonl").read_text(encoding="utf-8").splitlines()
    assert sink.written == 2
    first = json.loads(lines[0])
    assert first["job_id"] == "10000-1234567890-S"
    assert first["contact_email"] == "info@linde.de"
    assert first["confidence"] == "very_high"
    assert json.loads(lines[1])["confidence"] == "none"


def test_write_all_produces_json_and_markdown(tmp_path):
    config = ConfigLoader.from_dict({
        "output": {
            "json_file": str(tmp_path / "enrichment_{timestamp}.json"),
            "markdown_file": str(tmp_path / "enrichment_{timestamp}.md"),
        },
    })
    results = [_result(email="info@linde.de"), _result(job_id="10000-9999999999-S")]
    stats = get_enrichment_stats(results)

    paths = OutputWriter(config).write_all(results, stats)

    payload = json.loads(paths["json"].read_text(encoding="utf-8"))
    assert payload["stats"]["real_contacts_found"] == 1
    assert len(payload["results"]) == 2
    markdown = paths["markdown"].read_text(encoding="utf-8")
    assert "Koch \\| Köchin (m/w/d)" in markdown
    assert "info@linde.de" in markdown
    assert "**Real Contacts:** 1 (50.0%)" in markdown


def test_markdown_for_empty_run(tmp_path):
    config = ConfigLoader.from_dict({"output": {"markdown_file": str(tmp_path / "empty.md")}})

    path = OutputWriter(config).write_markdown([], get_enrichment_stats([]))

    assert "*No jobs enriched.*" in path.read_text(encoding="utf-8")


def test_run_metrics_written_with_timings(tmp_path):
    metrics = RunMetrics()
    metrics.inc("jobs_total", 2)
    metrics.observe("enrich_seconds", 1.5)
    metrics.observe("enrich_seconds", 2.5)
    metrics.record_event("job_failed", job_id="x", error=None)
    metrics.finish()

    path = metrics.write_json(template=str(tmp_path / "run_metrics_{timestamp}.json"), extra={"stats": {"total": 2}})

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["counters"] == {"jobs_total": 2}
    assert payload["timings"]["enrich_seconds"] == {"count": 2, "avg": 2.0, "max": 2.5}
    assert payload["events"][0] == {"t": payload["events"][0]["t"], "kind": "job_failed", "job_id": "x"}
    assert payload["extra"]["stats"]["total"] == 2
    assert metrics.output_path == path


def test_record_result_counts_status_and_confidence():
    metrics = RunMetrics()

    metrics.record_result(_result(email="info@linde.de"))
    metrics.record_result(_result(job_id="10000-9999999999-S"))
    with metrics.timed("page_visit_seconds"):
        pass

    assert metrics.counters["status_completed"] == 2
    assert metrics.counters["confidence_very_high"] == 1
    assert metrics.counters["confidence_none"] == 1
    assert metrics.counters["real_contacts"] == 1
    assert metrics.timing_summary()["page_visit_seconds"]["count"] == 1
    assert metrics.events == []

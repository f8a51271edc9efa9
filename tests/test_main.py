import json

import pytest

from contact_scraper import main as main_module


def test_parse_args_enrich():
    args = main_module.parse_args(["--config", "custom.yaml", "enrich", "jobs.json", "--limit", "5"])

    assert args.config == "custom.yaml"
    assert args.command == "enrich"
    assert args.jobs == "jobs.json"
    assert args.limit == 5


def test_command_is_required():
    with pytest.raises(SystemExit):
        main_module.parse_args([])


def test_missing_config_exits_with_error(tmp_path, capsys):
    code = main_module.main(["--config", str(tmp_path / "missing.yaml"), "captcha-check"])

    assert code == 1
    assert "Config file not found" in capsys.readouterr().out


def test_enrich_run_writes_outputs(tmp_path):
    settings = tmp_path / "settings.yaml"
    settings.write_text(
        "output:\n"
        f"  json_file: {tmp_path}/enrichment.json\n"
        f"  jsonl_file: {tmp_path}/enriched.jsonl\n"
        f"  markdown_file: {tmp_path}/enrichment.md\n"
        f"  metrics_file: {tmp_path}/metrics.json\n"
        "logging:\n"
        f"  log_file: {tmp_path}/run.log\n",
        encoding="utf-8",
    )
    jobs = tmp_path / "jobs.json"
    jobs.write_text(json.dumps([
        {"refnr": "10000-1111111111-S", "titel": "Lagerhelfer", "contact_email": "hr@nord.de"},
    ]), encoding="utf-8")

    code = main_module.main(["--config", str(settings), "enrich", str(jobs)])

    assert code == 0
    records = [json.loads(line) for line in (tmp_path / "enriched.jsonl").read_text(encoding="utf-8").splitlines()]
    assert records[0]["contact_email"] == "hr@nord.de"
    assert json.loads((tmp_path / "metrics.json").read_text(encoding="utf-8"))["counters"]["jobs_existing_contact"] == 1

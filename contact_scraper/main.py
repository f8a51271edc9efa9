#!/usr/bin/env python3

"""
Contact Scraper - Main Entry Point
Enriches Bundesagentur job postings with hiring contacts
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List

from dotenv import load_dotenv

from contact_scraper import __version__
from contact_scraper.browser_session import BrowserSession
from contact_scraper.captcha_solver import CaptchaSolveError, ChallengeSolver, TwoCaptchaSolver
from contact_scraper.challenge import ChallengeFlow
from contact_scraper.config_loader import ConfigLoader, load_config
from contact_scraper.consent import ConsentHandler
from contact_scraper.enrichment import ContactEnrichmentService, get_enrichment_stats
from contact_scraper.models import EnrichmentResult, JobRecord
from contact_scraper.output_writer import JsonlResultSink, OutputWriter, load_jobs
from contact_scraper.run_metrics import RunMetrics
from contact_scraper.scraper import JobPageScraper, scrape_website_contacts

PROJECT_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(dotenv_path=PROJECT_ROOT / ".env", override=False)


def setup_logging(config) -> None:
    """Configure logging for the application"""
    log_file = config.get_log_file()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    log_level = getattr(logging, config.get_log_level(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler()
        ]
    )

    logger = logging.getLogger(__name__)
    logger.info("Logging initialized: %s", log_file)


def display_config(config, jobs_count: int) -> None:
    """Display loaded configuration"""
    print("\n" + "="*60)
    print(f"📇 CONTACT SCRAPER v{__version__}")
    print("="*60)

    print(f"\n📋 Jobs to enrich: {jobs_count}")
    print(f"🧵 Concurrent pages: {config.get_max_concurrent_pages()}")
    print(f"📦 Batch size: {config.get_batch_size()}")

    print(f"\n⚙️  BROWSER SETTINGS:")
    print(f"  Headless mode: {config.is_headless()}")
    print(f"  Stealth: {config.use_stealth()}")
    print(f"  Page timeout: {config.get_page_timeout()/1000}s")

    print(f"\n🔐 CAPTCHA:")
    if config.is_captcha_auto_solve_enabled():
        key_state = "set" if config.get_captcha_api_key() else "missing"
        print(f"  ✓ Enabled ({config.get_captcha_provider()}, {config.get_captcha_api_key_env()} {key_state})")
        print(f"  Budget: {config.get_captcha_max_cycles()} cycles / {config.get_captcha_time_budget_seconds():.0f}s")
    else:
        print(f"  ✗ Disabled")

    print("\n" + "="*60 + "\n")


def build_service(config: ConfigLoader, metrics: RunMetrics, sink=None):
    """Wire the session, handlers and orchestrator for one run."""
    profile = config.get_page_profile()
    session = BrowserSession(config, profile=profile)
    solver = ChallengeSolver.from_config(config)
    scraper = JobPageScraper(
        config,
        session,
        ConsentHandler(config, profile),
        ChallengeFlow(config, solver, profile),
    )
    service = ContactEnrichmentService(config, scraper, metrics=metrics, sink=sink)
    return service, session


async def run_enrichment(config: ConfigLoader, jobs: List[JobRecord], metrics: RunMetrics) -> List[EnrichmentResult]:
    sink = JsonlResultSink(config.get_output_path('jsonl'))
    service, session = build_service(config, metrics, sink)
    try:
        return await service.enrich_many(jobs)
    finally:
        await session.close()


def cmd_enrich(args, config: ConfigLoader) -> int:
    logger = logging.getLogger(__name__)

    jobs = load_jobs(Path(args.jobs))
    if args.limit:
        jobs = jobs[: args.limit]
    if not jobs:
        print("\n⚠️  No jobs to enrich. Check the input file.")
        logger.warning("No jobs loaded from %s", args.jobs)
        return 0

    display_config(config, len(jobs))

    metrics = RunMetrics()
    results = asyncio.run(run_enrichment(config, jobs, metrics))
    metrics.finish()

    stats = get_enrichment_stats(results)
    writer = OutputWriter(config)
    output_files = writer.write_all(results, stats)
    metrics_path = metrics.write_json(template=config.get_metrics_template(), extra={"stats": stats})

    print("\n" + "="*60)
    print("✅ ENRICHMENT COMPLETE")
    print("="*60)
    print(f"\n📊 Results: {stats['real_contacts_found']}/{stats['total']} jobs with real contacts ({stats['real_contacts_rate']})")
    print(f"🔗 External links: {stats['external_links_used']}")
    print(f"❌ Failed: {stats['failed']}")
    print(f"📁 Files:")
    print(f"   JSON: {output_files['json']}")
    print(f"   Markdown: {output_files['markdown']}")
    print(f"   Metrics: {metrics_path}")
    print("\n" + "="*60 + "\n")

    logger.info("Enrichment complete: %s jobs processed", stats['total'])
    return 0


def cmd_website(args, config: ConfigLoader) -> int:
    async def _run():
        session = BrowserSession(config) if args.browser_fallback else None
        try:
            return await scrape_website_contacts(args.url, config, session)
        finally:
            if session is not None:
                await session.close()

    contacts = asyncio.run(_run())
    if not contacts:
        print(f"⚠️  No contacts found on {args.url}")
        return 0
    print(f"\n📇 Contacts on {args.url}:")
    for contact in contacts:
        print(f"  - {contact}")
    return 0


def cmd_captcha_check(args, config: ConfigLoader) -> int:
    api_key = config.get_captcha_api_key()
    if not api_key:
        print(f"❌ {config.get_captcha_api_key_env()} is not set")
        return 1
    try:
        status = TwoCaptchaSolver(api_key=api_key).test_connection()
    except CaptchaSolveError as e:
        print(f"❌ Captcha service check failed: {e}")
        return 1
    if not status["ok"]:
        print(f"❌ Captcha service check failed: {status['error']}")
        return 1
    print(f"✅ 2captcha reachable, balance: {status['balance']:.2f}")
    return 0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Job contact enrichment scraper")
    parser.add_argument(
        "--config",
        default="config/settings.yaml",
        help="Path to config YAML",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    enrich = subparsers.add_parser("enrich", help="Enrich jobs from a JSON file")
    enrich.add_argument("jobs", help="Path to a JSON file with job records")
    enrich.add_argument("--limit", type=int, default=0, help="Only enrich the first N jobs")

    website = subparsers.add_parser("website", help="Scrape contacts from a company website")
    website.add_argument("url")
    website.add_argument("--browser-fallback", action="store_true", help="Retry with the browser if HTTP fails")

    subparsers.add_parser("captcha-check", help="Check the captcha service key and balance")

    return parser.parse_args(argv)


def main(argv=None):
    """Main execution function"""
    print("\n🚀 Starting Contact Scraper...")
    args = parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config, require_file=True)
    except FileNotFoundError as e:
        print(f"❌ Error: {e}")
        print("Make sure config/settings.yaml exists!")
        return 1
    except Exception as e:
        print(f"❌ Error loading config: {e}")
        return 1

    setup_logging(config)

    commands = {
        "enrich": cmd_enrich,
        "website": cmd_website,
        "captcha-check": cmd_captcha_check,
    }
    return commands[args.command](args, config)


if __name__ == "__main__":
    sys.exit(main())

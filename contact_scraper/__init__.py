"""
Contact enrichment scraper for Bundesagentur job detail pages.
"""

__version__ = "0.3.0"

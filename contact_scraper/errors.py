"""
Exception types shared across the scraper.
"""


class ContactScraperError(RuntimeError):
    pass


class BrowserLaunchError(ContactScraperError):
    """Raised when the headless browser cannot be started (environment-level)."""


class PageLoadError(ContactScraperError):
    """Raised when a job detail page cannot be loaded at all."""

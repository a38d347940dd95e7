"""Custom exception classes for the scraper."""


class CpfScraperException(Exception):
    """Base exception for all scraper errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class BrowserLaunchError(CpfScraperException):
    """Raised when the headless browser cannot be started.

    Always fatal: it points at the environment (missing binaries,
    sandbox restrictions), not at a transient network fault.
    """

    def __init__(self, message: str):
        super().__init__(f"Browser launch failed: {message}")


class NavigationError(CpfScraperException):
    """Raised when a page navigation or wait does not complete."""

    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(f"Navigation to {url} failed: {message}")


class RegistryError(CpfScraperException):
    """Raised when an open-data registry lookup exhausts its retries."""

    def __init__(self, name: str, message: str):
        super().__init__(f"Registry lookup for '{name}' failed: {message}")


class ExportError(CpfScraperException):
    """Raised when the spreadsheet export cannot be written."""


class QueryResolutionError(CpfScraperException):
    """Raised when no configured search query matches the CLI selection."""

"""Training marketplace scraper.

Extracts search results of the moncompteformation.gouv.fr marketplace,
enriches them from detail pages and the open-data registry, and exports
the store to Excel.
"""

__version__ = "1.0.0"

"""
Search Crawler

An asynchronous web crawler that discovers, fetches and indexes pages for a
search backend.
"""

__version__ = "1.0.0"
__description__ = "A priority-ordered web crawler with headless rendering and a query API"

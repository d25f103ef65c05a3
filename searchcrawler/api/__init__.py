"""
Read-only query API over crawled pages.
"""

from .server import create_app, run_server

__all__ = ['create_app', 'run_server']

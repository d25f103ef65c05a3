"""
HTTP query API serving stored pages and crawl statistics (aiohttp.web).
"""

import asyncio
import json
import logging
from typing import Optional

from aiohttp import web

from ..storage.database import DatabaseManager
from ..storage.state_tracker import CrawlStateTracker


DATABASE_KEY = web.AppKey('database', DatabaseManager)
STATE_TRACKER_KEY = web.AppKey('state_tracker', object)

DEFAULT_LIMIT = 10
MAX_LIMIT = 100

logger = logging.getLogger(__name__)


def _int_param(request: web.Request, name: str, default: int, maximum: Optional[int] = None) -> int:
    raw = request.query.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": f"Query parameter '{name}' must be an integer"}),
            content_type='application/json'
        )
    value = max(value, 0)
    return min(value, maximum) if maximum is not None else value


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render every failure as a JSON body."""
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return web.json_response({'error': 'Endpoint not found'}, status=404)
    except web.HTTPException:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"API error on {request.path}: {e}", exc_info=True)
        return web.json_response({'error': 'Internal server error'}, status=500)


async def index(request: web.Request) -> web.Response:
    return web.json_response({
        'name': 'Search Crawler API',
        'version': '1.0.0',
        'endpoints': [
            {'path': '/search', 'method': 'GET', 'description': 'Search crawled pages'},
            {'path': '/pages', 'method': 'GET', 'description': 'List crawled pages with pagination'},
            {'path': '/pages/{id}', 'method': 'GET', 'description': 'Get a specific page by ID'},
            {'path': '/stats', 'method': 'GET', 'description': 'Get crawler statistics'}
        ]
    })


async def search(request: web.Request) -> web.Response:
    query = request.query.get('q', '').strip()
    if not query:
        return web.json_response({'error': 'Query parameter "q" is required'}, status=400)

    limit = _int_param(request, 'limit', DEFAULT_LIMIT, MAX_LIMIT)
    offset = _int_param(request, 'offset', 0)
    result = await request.app[DATABASE_KEY].search(query, limit=limit, offset=offset)

    return web.json_response({
        'query': query,
        'total': result['total'],
        'offset': offset,
        'limit': limit,
        'results': result['results']
    })


async def list_pages(request: web.Request) -> web.Response:
    limit = _int_param(request, 'limit', DEFAULT_LIMIT, MAX_LIMIT)
    offset = _int_param(request, 'offset', 0)
    domain = request.query.get('domain') or None
    result = await request.app[DATABASE_KEY].list_pages(limit=limit, offset=offset, domain=domain)

    return web.json_response({
        'total': result['total'],
        'offset': offset,
        'limit': limit,
        'pages': result['pages']
    })


async def get_page(request: web.Request) -> web.Response:
    page = await request.app[DATABASE_KEY].get_page(request.match_info['page_id'])
    if page is None:
        return web.json_response({'error': 'Page not found'}, status=404)
    return web.json_response(page)


async def stats(request: web.Request) -> web.Response:
    db_stats = await request.app[DATABASE_KEY].get_stats()
    response = {
        'pages': {'count': db_stats.get('pages', 0), 'domains': db_stats.get('domains', 0)},
        'errors': db_stats.get('errors', 0)
    }

    state_tracker: Optional[CrawlStateTracker] = request.app[STATE_TRACKER_KEY]
    if state_tracker is not None:
        response['urls'] = await state_tracker.get_stats()

    return web.json_response(response)


def create_app(database: DatabaseManager,
               state_tracker: Optional[CrawlStateTracker] = None) -> web.Application:
    """
    Build the query API application.

    Args:
        database: Initialized page store
        state_tracker: Optional task store used for URL counts on /stats
    """
    app = web.Application(middlewares=[error_middleware])
    app[DATABASE_KEY] = database
    app[STATE_TRACKER_KEY] = state_tracker

    app.router.add_get('/', index)
    app.router.add_get('/search', search)
    app.router.add_get('/pages', list_pages)
    app.router.add_get('/pages/{page_id}', get_page)
    app.router.add_get('/stats', stats)
    return app


async def run_server(app: web.Application, host: str = '0.0.0.0', port: int = 3000,
                     shutdown_event: Optional[asyncio.Event] = None):
    """Serve app until shutdown_event is set (or forever without one)."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Search API server running on {host}:{port}")

    try:
        if shutdown_event is None:
            shutdown_event = asyncio.Event()
        await shutdown_event.wait()
    finally:
        logger.info("Shutting down server")
        await runner.cleanup()

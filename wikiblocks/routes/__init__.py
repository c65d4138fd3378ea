# Routes package init
"""
WikiBlocks Backend — API Routes Package
=========================================

What:  HTTP route handlers that accept requests and return responses.

Route Inventory:
    - pages.py:    /api/pages, /api/pages/{id}, /api/pages/slug/{slug}
    - blocks.py:   /api/pages/{page_id}/blocks[/reorder], /api/blocks[/{id}]
    - history.py:  /api/pages/{page_id}/history[/timeline|/snapshots|/{history_id}],
                   /api/history/{history_id}/restore, /api/history/cleanup
    - health.py:   /health

Routes are thin: they read the owner id from X-User-ID, call one service
method, and serialize the result. Business rules live in the services.
"""

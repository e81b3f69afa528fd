"""apiscope: route discovery, API monitoring and per-project store admin.

Quickstart::

    from apiscope.discovery import RouteScanner
    result = await RouteScanner().discover_routes("https://api.example.com")
    for route in result.routes:
        print(route.method, route.path, route.status)

Run the HTTP service with ``python -m apiscope.server``.
"""

__version__ = "1.0.0"

"""
Web module for stage-timer.

Provides HTTP server with:
- Reference time endpoint for viewer clock-offset probes
- Timer record API and operator actions
- Server-Sent Events for record changes
- Health, status and Prometheus metrics
"""

from .web_server import WebServer, WebRequestHandler

__all__ = ['WebServer', 'WebRequestHandler']

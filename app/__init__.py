"""
                Restaurant Ordering Backend

Session-scoped order CRUD for restaurant outlets, an SSE stream of
order events, and a live-update client that falls back from push
to polling when the stream is unavailable.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"

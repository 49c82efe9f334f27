"""
Edge Flush

CDN cache control and tag-based invalidation for FastAPI applications:
1. Decides per response whether the edge may cache it (Cache-Control)
2. Tags each cached URL with the database entities it was rendered from
3. Purges exactly the affected URLs when those entities change
"""

__version__ = "0.1.0"

"""
Session module: expiring bearer tokens.
"""

from shardcache.session.store import Session, SessionCookie, SessionStore

__all__ = ["Session", "SessionCookie", "SessionStore"]

"""API routes."""

from signup_core.api.routes import assistance, metrics, notifications, registrations, trust

__all__ = ["assistance", "metrics", "notifications", "registrations", "trust"]

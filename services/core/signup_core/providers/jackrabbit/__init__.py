"""Jackrabbit Class provider integration."""

from signup_core.providers.jackrabbit.adapter import JackrabbitAdapter, JackrabbitAPIError

__all__ = ["JackrabbitAdapter", "JackrabbitAPIError"]

"""Relay gateway: simplified inference contract in front of the backend engine."""

from relay_core.gateway.app import create_app, translate_response
from relay_core.gateway.backend import BackendClient

__all__ = ["BackendClient", "create_app", "translate_response"]

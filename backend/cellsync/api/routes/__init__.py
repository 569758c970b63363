"""API route handlers for cellsync."""

from cellsync.api.routes import integrations as integrations

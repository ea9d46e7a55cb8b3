"""Upstream provider clients, session management and the fallback orchestrator."""

"""Shared models and services used by the engine and the frontends."""

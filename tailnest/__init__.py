"""Coordination-server core: names, models, an in-memory registry, OIDC login flow and client profiles."""

__version__ = "0.1.0"

__all__ = ["__version__"]
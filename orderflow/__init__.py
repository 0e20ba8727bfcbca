"""Role-gated order approval workflow service."""

__version__ = "1.0.0"

"""Connection resilience services: health scoring, reconnection planning and discovery."""

__version__ = "0.1.0"

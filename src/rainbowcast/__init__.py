"""Rainbow sighting weather capture, monitoring alerts and map queries."""

__version__ = "0.1.0"

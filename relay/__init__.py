"""Routes one-to-one messaging conversations between an automated responder and live agents."""

__version__ = "0.1.0"

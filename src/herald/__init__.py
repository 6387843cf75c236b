"""Herald: signed activity federation and delivery engine."""

__version__ = "0.1.0"

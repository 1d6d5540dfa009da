"""Direct booking engine: availability, payments, cancellations and refunds."""

__version__ = "1.0.0"

"""Task classification and tiered AI model recommendations."""

__version__ = "0.1.0"

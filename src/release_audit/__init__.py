"""Release audit and signing controller."""

__version__ = "0.1.0"

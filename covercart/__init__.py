"""CoverCart: orders, payments and shipping for custom phone covers."""

__version__ = "0.1.0"

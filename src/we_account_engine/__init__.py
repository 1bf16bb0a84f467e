"""Session and extraction engine for the WE (Telecom Egypt) customer portal."""

__version__ = "0.3.0"

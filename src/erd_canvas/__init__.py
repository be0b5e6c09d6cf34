"""ERD Canvas - a visual database schema editor backend."""

__version__ = "1.0.0"

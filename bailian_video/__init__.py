"""HTTP service, SQLite task store and DashScope client for Wanx video generation tasks."""

__version__ = "0.1.0"
__all__ = ["__version__"]
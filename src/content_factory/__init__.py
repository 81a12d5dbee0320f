"""Credit-metered task orchestration for bulk content generation and site scans."""

__version__ = "0.1.0"

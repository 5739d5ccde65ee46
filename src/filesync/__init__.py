"""Cache-backed file synchronization across local, S3 and Google Drive storage."""

__version__ = "0.1.0"

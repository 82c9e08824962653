"""treesync - filtered directory listings kept in sync with the filesystem."""

__version__ = "0.1.0"

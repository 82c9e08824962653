"""treesync CLI package."""

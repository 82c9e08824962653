"""Engine internals. Public API lives in treesync.sync.ops."""

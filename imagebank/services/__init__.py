"""Storage, upload and transfer services."""

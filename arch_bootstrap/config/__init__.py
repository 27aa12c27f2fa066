"""Settings, install answer files and field validation."""

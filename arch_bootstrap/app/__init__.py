"""Interactive front-end helpers for the CLI."""

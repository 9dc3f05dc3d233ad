"""gigsettle command-line interface."""

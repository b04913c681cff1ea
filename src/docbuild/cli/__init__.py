"""docbuild command-line interface."""

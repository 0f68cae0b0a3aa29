"""Session persistence and lifecycle."""

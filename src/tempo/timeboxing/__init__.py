"""Duration model, task splitting and session building."""

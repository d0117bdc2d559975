"""Change notification package."""

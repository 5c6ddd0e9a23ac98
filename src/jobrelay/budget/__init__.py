"""Monthly spend tracking and budget enforcement per organization."""

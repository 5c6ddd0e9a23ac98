"""Queue workers: events, orchestration, notifications."""

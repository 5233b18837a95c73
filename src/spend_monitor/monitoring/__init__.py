"""Alert rules, evaluation, persistence and notification."""

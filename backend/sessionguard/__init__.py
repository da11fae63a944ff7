"""SessionGuard - API security and session-integrity engine."""

"""Per-process CPU, memory and disk leaderboards for a single host."""

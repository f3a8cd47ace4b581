"""Schedule, admit and execute binary and scenario jobs."""

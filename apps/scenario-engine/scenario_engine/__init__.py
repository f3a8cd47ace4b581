"""Run YAML scenarios step by step against a command-line binary."""

"""Integration tests: real worker subprocesses and a real SQLite state DB."""

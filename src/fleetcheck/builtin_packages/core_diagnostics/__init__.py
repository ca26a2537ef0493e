"""Core diagnostics: baseline storage checks for every VM."""

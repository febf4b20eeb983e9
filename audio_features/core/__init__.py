"""Core - errors, configuration, interfaces and the feature cache."""

"""Modules - analysis, sampling and intents."""

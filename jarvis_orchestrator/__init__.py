"""Jarvis orchestrator: reminders, configuration and state paths."""

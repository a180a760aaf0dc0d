"""Jarvis webhook gateway: intent dispatch and conversation state."""

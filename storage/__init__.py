"""Persistence for notes and chat history."""

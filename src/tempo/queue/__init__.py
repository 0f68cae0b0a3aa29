"""Backlog storage, effective priority and suggestions."""

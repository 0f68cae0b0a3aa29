"""Tempo: time-boxing planner engine."""

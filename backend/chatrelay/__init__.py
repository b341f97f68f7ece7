"""Presence-aware chat relay with durable conversation threads."""

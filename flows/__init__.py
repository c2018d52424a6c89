"""Workflow modules: each registers its handlers and ships a graph definition."""

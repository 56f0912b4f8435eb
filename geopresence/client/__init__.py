"""Headless presence client: transport channel, location producer, renderer."""

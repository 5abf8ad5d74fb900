"""Durable browser-automation job pipeline: queue, dispatcher, workers and result store."""

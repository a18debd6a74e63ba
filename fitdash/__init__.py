"""Fitdash backend: wearable connections and multi-provider sync."""

"""State layer.

In-memory, disposable views derived from the durable store: the
device -> active-session registry and the latest telemetry/status cache.
"""

"""Ingestion layer.

This package turns reports received over MQTT or HTTP into normalized
reports and routes them through one pipeline: session resolution, live cache
update and conditional coordinate persistence.
"""

__all__: list[str] = []

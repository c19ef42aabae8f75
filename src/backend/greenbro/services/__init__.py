"""Telemetry ingest, alerting and health services."""

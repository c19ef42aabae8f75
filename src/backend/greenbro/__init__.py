"""Heat pump telemetry ingestion and alerting core."""

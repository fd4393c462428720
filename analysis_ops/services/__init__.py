"""Engine services: retry queue, alerting, metrics."""

"""Prometheus exporter for smart meters reachable over a Wi-SUN B-route dongle."""

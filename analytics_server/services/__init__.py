"""Service layer: metrics recording, connection monitoring, caching and analytics."""

"""Read-only clients for the source chain's REST gateway (valsets, send events)."""

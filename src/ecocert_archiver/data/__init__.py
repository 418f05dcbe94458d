"""Bundled sample data used by the mock attestation source."""

"""Command line interface for ThreatVault."""

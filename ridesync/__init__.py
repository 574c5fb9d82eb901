"""Cycling activity ingestion service."""

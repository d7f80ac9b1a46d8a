"""Folio: chapter page ingestion backend."""

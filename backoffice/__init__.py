"""Backoffice operations console: reference-data import and transformation pipeline."""

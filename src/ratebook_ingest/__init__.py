"""Ingestion pipeline for vehicle-leasing provider rate sheets."""

__version__ = "0.1.0"

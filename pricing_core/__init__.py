"""Mortgage premium-band analytics core.

This package contains:
- premium-band normalization (margin buckets -> basis-point bands)
- record ingestion (XLSX/CSV rows -> canonical pandas frame)
- filter specification, normalization and application
- page compute functions (JSON-serializable payloads)
"""

"""Spreadsheet bulk upload pipeline.

Reads multi-sheet workbooks, normalizes rows against a per-domain field registry,
validates them (field, business and cross-row rules), reconciles asynchronous
submission outcomes back to rows by sequence id, and exports consolidated results.
"""

__version__ = "0.1.0"
